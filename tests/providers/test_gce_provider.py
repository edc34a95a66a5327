# tests/providers/test_gce_provider.py
import concurrent.futures

import pytest
from unittest.mock import MagicMock
from google.api_core import exceptions as google_exceptions
from google.cloud import compute_v1

from orchestrate.providers.gce_provider import (
    GceComputeProvider,
    accelerator_type,
    custom_machine_type,
    expand_scopes,
)
from orchestrate.providers.interface import InstanceSpec, InstanceTemplateSpec
from orchestrate.services.exceptions import OperationTimeoutError, ProviderError
from orchestrate.services.provisioning_steps import OSType, ProvisioningStep


@pytest.fixture
def clients():
    """MagicMocks standing in for the compute_v1 clients."""
    return {name: MagicMock() for name in ("instances", "templates", "images", "projects", "addresses")}


@pytest.fixture
def provider(clients) -> GceComputeProvider:
    return GceComputeProvider(
        instances_client=clients["instances"],
        templates_client=clients["templates"],
        images_client=clients["images"],
        projects_client=clients["projects"],
        addresses_client=clients["addresses"],
        steps_url="gs://orchestrate-steps/",
        poll_interval=0,
    )


def guest_attributes(**values):
    return compute_v1.GuestAttributes(
        query_value=compute_v1.GuestAttributesValue(
            items=[compute_v1.GuestAttributesEntry(namespace="orchestrate", key=key, value=value)
                   for key, value in values.items()]
        )
    )


class TestHelpers:
    def test_custom_machine_type(self):
        assert custom_machine_type(4, 16) == "custom-4-16384"

    @pytest.mark.parametrize("gpu_type, expected", [
        ("t4-vws", "nvidia-tesla-t4-vws"),
        ("p100", "nvidia-tesla-p100"),
        ("l4", "nvidia-l4"),
        ("nvidia-tesla-v100", "nvidia-tesla-v100"),
    ])
    def test_accelerator_type(self, gpu_type, expected):
        assert accelerator_type(gpu_type) == expected

    def test_expand_scopes(self):
        scopes = expand_scopes(["cloud-platform", "https://example.com/scope", "cloud-platform"])
        assert scopes == ["https://www.googleapis.com/auth/cloud-platform", "https://example.com/scope"]


class TestInstanceTemplates:
    def test_create_gpu_template(self, provider, clients):
        # === Arrange ===
        spec = InstanceTemplateSpec(
            name="render-gpu", source_image="projects/centos-cloud/global/images/centos-7", cpus=12, memory=64,
            region="us-central1", gpu_type="t4-vws", gpu_count=2, subnetwork="render", scopes=["cloud-platform"],
            metadata={"team": "fx"},
        )

        # === Act ===
        provider.create_instance_template("proj", spec, timeout=30)

        # === Assert ===
        kwargs = clients["templates"].insert.call_args.kwargs
        assert kwargs["project"] == "proj"
        properties = kwargs["instance_template_resource"].properties
        assert properties.machine_type == "custom-12-65536"
        assert properties.guest_accelerators[0].accelerator_type == "nvidia-tesla-t4-vws"
        assert properties.guest_accelerators[0].accelerator_count == 2
        assert properties.scheduling.on_host_maintenance == "TERMINATE"
        assert properties.network_interfaces[0].subnetwork == "regions/us-central1/subnetworks/render"
        assert [(item.key, item.value) for item in properties.metadata.items] == [("team", "fx")]
        clients["templates"].insert.return_value.result.assert_called_once_with(timeout=30)

    def test_create_times_out(self, provider, clients):
        clients["templates"].insert.return_value.result.side_effect = concurrent.futures.TimeoutError()
        spec = InstanceTemplateSpec(name="render-small", source_image="img", cpus=4, memory=16, region="us-central1")

        with pytest.raises(OperationTimeoutError):
            provider.create_instance_template("proj", spec, timeout=1)

    def test_api_error_becomes_provider_error(self, provider, clients):
        clients["templates"].insert.side_effect = google_exceptions.Forbidden("quota")
        spec = InstanceTemplateSpec(name="render-small", source_image="img", cpus=4, memory=16, region="us-central1")

        with pytest.raises(ProviderError, match="render-small"):
            provider.create_instance_template("proj", spec, timeout=1)

    def test_delete_missing_template_is_not_an_error(self, provider, clients):
        clients["templates"].delete.side_effect = google_exceptions.NotFound("gone")

        assert provider.delete_instance_template("proj", "render-small", timeout=1) is False

    def test_exists(self, provider, clients):
        assert provider.instance_template_exists("proj", "render-small") is True
        clients["templates"].get.side_effect = google_exceptions.NotFound("gone")
        assert provider.instance_template_exists("proj", "render-small") is False


class TestInstances:
    def test_create_from_instance_template(self, provider, clients):
        spec = InstanceSpec(project="proj", zone="us-central1-a", name="render-small-alice",
                            instance_template="render-small", metadata={"user": "alice"})

        provider.create_instance(spec, timeout=30)

        kwargs = clients["instances"].insert.call_args.kwargs
        assert kwargs["source_instance_template"] == "projects/proj/global/instanceTemplates/render-small"
        instance = kwargs["instance_resource"]
        assert instance.name == "render-small-alice"
        assert not instance.machine_type
        assert [(item.key, item.value) for item in instance.metadata.items] == [("user", "alice")]

    def test_static_ip_reserves_an_address(self, provider, clients):
        clients["addresses"].get.return_value = compute_v1.Address(address="203.0.113.7")
        spec = InstanceSpec(project="proj", zone="us-central1-a", name="ws", instance_template="render-small",
                            external_ip=True, static_ip=True)

        provider.create_instance(spec, timeout=30)

        assert clients["addresses"].insert.call_args.kwargs["region"] == "us-central1"
        interface = clients["instances"].insert.call_args.kwargs["instance_resource"].network_interfaces[0]
        assert interface.access_configs[0].nat_i_p == "203.0.113.7"

    def test_static_address_is_released_when_the_create_fails(self, provider, clients):
        # === Arrange ===
        clients["addresses"].get.return_value = compute_v1.Address(address="203.0.113.7")
        clients["instances"].insert.return_value.result.side_effect = concurrent.futures.TimeoutError()
        spec = InstanceSpec(project="proj", zone="us-central1-a", name="ws", instance_template="render-small",
                            external_ip=True, static_ip=True)

        # === Act & Assert ===
        with pytest.raises(OperationTimeoutError):
            provider.create_instance(spec, timeout=30)
        clients["addresses"].delete.assert_called_once_with(project="proj", region="us-central1", address="ws-ip")

    def test_ephemeral_address_has_nothing_to_release(self, provider, clients):
        clients["instances"].insert.side_effect = google_exceptions.Forbidden("quota")
        spec = InstanceSpec(project="proj", zone="us-central1-a", name="ws", instance_template="render-small",
                            external_ip=True)

        with pytest.raises(ProviderError):
            provider.create_instance(spec, timeout=30)
        clients["addresses"].delete.assert_not_called()

    def test_delete_missing_instance(self, provider, clients):
        clients["instances"].delete.side_effect = google_exceptions.NotFound("gone")

        assert provider.delete_instance("proj", "us-central1-a", "ws", timeout=1) is False


class TestApplyStep:
    def test_hands_the_step_over_and_waits_for_done(self, provider, clients):
        # === Arrange ===
        clients["instances"].get.return_value = compute_v1.Instance(
            metadata=compute_v1.Metadata(fingerprint="abc", items=[compute_v1.Items(key="existing", value="1")])
        )
        clients["instances"].get_guest_attributes.side_effect = [
            google_exceptions.NotFound("not yet"),
            guest_attributes(**{"step-teradici": "done"}),
        ]

        # === Act ===
        provider.apply_step("proj", "us-central1-a", "ws-builder", ProvisioningStep.TERADICI,
                            {"teradici_registration_code": "ABC"}, OSType.WINDOWS, timeout=30)

        # === Assert ===
        metadata = clients["instances"].set_metadata.call_args.kwargs["metadata_resource"]
        items = {item.key: item.value for item in metadata.items}
        assert metadata.fingerprint == "abc"
        assert items == {
            "existing": "1",
            "teradici_registration_code": "ABC",
            "orchestrate-step": "teradici",
            "orchestrate-step-script": "gs://orchestrate-steps/windows/teradici.ps1",
        }
        assert clients["instances"].get_guest_attributes.call_count == 2

    def test_reported_failure(self, provider, clients):
        clients["instances"].get.return_value = compute_v1.Instance(metadata=compute_v1.Metadata())
        clients["instances"].get_guest_attributes.return_value = guest_attributes(**{"step-tools": "failed: no disk"})

        with pytest.raises(ProviderError, match="no disk"):
            provider.apply_step("proj", "us-central1-a", "ws-builder", ProvisioningStep.TOOLS,
                                {}, OSType.LINUX, timeout=30)

    def test_step_timeout(self, provider, clients):
        clients["instances"].get.return_value = compute_v1.Instance(metadata=compute_v1.Metadata())
        clients["instances"].get_guest_attributes.return_value = guest_attributes()

        with pytest.raises(OperationTimeoutError):
            provider.apply_step("proj", "us-central1-a", "ws-builder", ProvisioningStep.TOOLS,
                                {}, OSType.LINUX, timeout=0)


def test_create_image_uses_the_builder_boot_disk(provider, clients):
    provider.create_image("proj", "us-central1-a", "workstation", "workstation-builder", timeout=30,
                          description="steps: tools")

    image = clients["images"].insert.call_args.kwargs["image_resource"]
    assert image.source_disk == "projects/proj/zones/us-central1-a/disks/workstation-builder"
    assert image.description == "steps: tools"


def test_delete_image(provider, clients):
    assert provider.delete_image("proj", "workstation", timeout=30) is True
    clients["images"].delete.assert_called_once_with(project="proj", image="workstation")
    clients["images"].delete.return_value.result.assert_called_once_with(timeout=30)


def test_delete_missing_image_is_not_an_error(provider, clients):
    clients["images"].delete.side_effect = google_exceptions.NotFound("gone")

    assert provider.delete_image("proj", "workstation", timeout=30) is False


def test_get_image_from_family(provider, clients):
    clients["images"].get_from_family.return_value = compute_v1.Image(self_link="projects/p/global/images/img-1")

    assert provider.get_image_from_family("p", "fam") == "projects/p/global/images/img-1"
