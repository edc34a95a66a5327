# tests/services/test_compute_service.py
import pytest
from unittest.mock import MagicMock

from helpers import make_size, make_template_request
from orchestrate.services.compute_service import ComputeService
from orchestrate.services.exceptions import NotFoundError, PatternError
from orchestrate.services.requests import InstanceRequest
from orchestrate.services.template_service import TemplateService

# ===================================================================
#  Fixtures
# ===================================================================

def build_template(**kwargs):
    """A stored template model with a CPU size and a GPU size."""
    request = make_template_request(
        sizes=[
            make_size("small", metadata={"tier": "small"}),
            make_size("gpu", memory=64, cpus=12, gpu_type="t4-vws", gpu_count=2, disk_size=200),
        ],
        metadata={"team": "fx", "tier": "default"},
        **kwargs,
    )
    return TemplateService(MagicMock(), MagicMock())._to_model(request)


@pytest.fixture
def mock_template_service() -> MagicMock:
    """A TemplateService mock that resolves sizes from build_template()."""
    service = MagicMock(spec=TemplateService)
    template = build_template()

    def resolve_size(project, zone, name, size=None):
        found = template.find_size(size or template.default_size_name)
        if not found:
            raise NotFoundError(f"Size '{size}' not found.")
        return template, found

    service.resolve_size.side_effect = resolve_size
    service.template = template
    return service


@pytest.fixture
def compute_service(mock_template_service, fake_provider) -> ComputeService:
    return ComputeService(mock_template_service, fake_provider, operation_timeout=5, default_user="render")


def instance_request(**kwargs) -> InstanceRequest:
    fields = {"project": "proj", "zone": "us-central1-a", "template": "render"}
    fields.update(kwargs)
    return InstanceRequest(**fields)


# ===================================================================
#  create_instance
# ===================================================================
class TestCreateInstance:
    def test_creates_from_the_default_size_instance_template(self, compute_service, fake_provider):
        # === Act ===
        name = compute_service.create_instance(instance_request(metadata={"user": "alice"}))

        # === Assert ===
        assert name == "render-small-alice"
        spec = fake_provider.created_instances[0]
        assert spec.instance_template == "render-small"
        assert spec.source_image is None
        # request > size > template
        assert spec.metadata == {"team": "fx", "tier": "small", "user": "alice"}

    def test_explicit_name_wins(self, compute_service, fake_provider):
        name = compute_service.create_instance(instance_request(name="shot-042"))

        assert name == "shot-042"
        assert fake_provider.created_instances[0].name == "shot-042"

    def test_use_latest_image_overrides_the_source_image(self, compute_service, fake_provider):
        compute_service.create_instance(instance_request(size="gpu", use_latest_image=True))

        spec = fake_provider.created_instances[0]
        assert spec.instance_template == "render-gpu"
        assert spec.source_image == "projects/centos-cloud/global/images/centos-7-latest"
        assert spec.disk_size == 200

    def test_unknown_size(self, compute_service, fake_provider):
        with pytest.raises(NotFoundError):
            compute_service.create_instance(instance_request(size="huge"))
        assert fake_provider.calls == []


class TestResolveInstance:
    def test_default_user_when_none_is_given(self, compute_service):
        _, _, name = compute_service.resolve_instance(instance_request())
        assert name == "render-small-render"

    def test_template_pattern_with_gpu_tokens(self, compute_service, mock_template_service):
        mock_template_service.template.instance_name_pattern = "{type}-{region}-{gpu_count}x{gpu_type}-{user}"

        _, _, name = compute_service.resolve_instance(instance_request(size="gpu", metadata={"user": "bob"}))

        assert name == "render-us-central1-2xt4-vws-bob"

    def test_gpu_tokens_on_a_cpu_size_fail_without_partial_name(self, compute_service, mock_template_service, fake_provider):
        mock_template_service.template.instance_name_pattern = "{type}-{gpu_count}x{gpu_type}"

        with pytest.raises(PatternError) as excinfo:
            compute_service.create_instance(instance_request(size="small"))

        assert excinfo.value.tokens == ["gpu_count", "gpu_type"]
        assert fake_provider.created_instances == []

    def test_naming_context(self, compute_service, mock_template_service):
        template = mock_template_service.template
        context = compute_service.naming_context(instance_request(), template, template.find_size("small"))

        assert context == {
            "type": "render",
            "template": "render",
            "size": "small",
            "project": "proj",
            "zone": "us-central1-a",
            "region": "us-central1",
            "user": "render",
        }
