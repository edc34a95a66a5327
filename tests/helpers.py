# tests/helpers.py
import threading
from typing import Dict, List, Optional

from orchestrate.providers.interface import IComputeProvider, InstanceSpec, InstanceTemplateSpec
from orchestrate.services.exceptions import OperationTimeoutError, ProviderError
from orchestrate.services.provisioning_steps import OSType
from orchestrate.services.requests import ImageRequest, SizeRequest, TemplateRequest

# ===================================================================
#  In-memory compute provider
# ===================================================================

class FakeComputeProvider(IComputeProvider):
    """
    Keeps instance-templates, instances and images in dicts.

    Failures are injected by name: `fail_template_creates`,
    `slow_template_creates` (created, but reported as timed out),
    `fail_template_deletes`, `fail_instance_deletes`, `fail_image_deletes`
    and `fail_steps` (step name -> reason). `slow_image_creates` makes every
    capture store its image and then time out. `gate`, when set, makes
    create_instance_template block until it is released; `entered` is set as
    soon as a call is waiting.
    """

    def __init__(self):
        self.instance_templates: Dict[tuple, InstanceTemplateSpec] = {}
        self.instances: Dict[tuple, InstanceSpec] = {}
        self.images: Dict[tuple, str] = {}
        self.stopped: List[str] = []
        self.applied_steps: List[tuple] = []
        self.calls: List[tuple] = []
        self.created_instances: List[InstanceSpec] = []
        self.inaccessible_projects = set()
        self.fail_template_creates = set()
        self.fail_template_deletes = set()
        self.slow_template_creates = set()
        self.fail_instance_deletes = set()
        self.slow_image_creates = False
        self.fail_image_deletes = set()
        self.fail_steps: Dict[str, str] = {}
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def verify_project_access(self, project):
        if project in self.inaccessible_projects:
            raise ProviderError(f"No access to project '{project}'.")

    def get_image_from_family(self, project, family):
        return f"projects/{project}/global/images/{family}-latest"

    def create_instance(self, spec, timeout):
        self.calls.append(("create_instance", spec.name))
        self.created_instances.append(spec)
        self.instances[(spec.project, spec.name)] = spec
        return spec.name

    def delete_instance(self, project, zone, name, timeout):
        self.calls.append(("delete_instance", name))
        if name in self.fail_instance_deletes:
            raise ProviderError(f"Cannot delete instance '{name}'.")
        return self.instances.pop((project, name), None) is not None

    def stop_instance(self, project, zone, name, timeout):
        self.calls.append(("stop_instance", name))
        self.stopped.append(name)

    def create_instance_template(self, project, spec, timeout):
        self.calls.append(("create_instance_template", spec.name))
        if self.gate is not None:
            self.entered.set()
            self.gate.wait(5)
        if spec.name in self.fail_template_creates:
            raise ProviderError(f"Quota exceeded creating '{spec.name}'.")
        self.instance_templates[(project, spec.name)] = spec
        if spec.name in self.slow_template_creates:
            raise OperationTimeoutError(f"Timed out waiting to create '{spec.name}'.")

    def delete_instance_template(self, project, name, timeout):
        self.calls.append(("delete_instance_template", name))
        if name in self.fail_template_deletes:
            raise ProviderError(f"Cannot delete '{name}'.")
        return self.instance_templates.pop((project, name), None) is not None

    def instance_template_exists(self, project, name):
        return (project, name) in self.instance_templates

    def apply_step(self, project, zone, instance, step, metadata, os_type, timeout):
        self.calls.append(("apply_step", step.step_name))
        self.applied_steps.append((step.step_name, dict(metadata)))
        if step.step_name in self.fail_steps:
            raise ProviderError(self.fail_steps[step.step_name])

    def create_image(self, project, zone, name, source_instance, timeout, description=""):
        self.calls.append(("create_image", name))
        self.images[(project, name)] = description
        if self.slow_image_creates:
            raise OperationTimeoutError(f"Timed out waiting to capture '{name}'.")
        return f"projects/{project}/global/images/{name}"

    def delete_image(self, project, name, timeout):
        self.calls.append(("delete_image", name))
        if name in self.fail_image_deletes:
            raise ProviderError(f"Cannot delete image '{name}'.")
        return self.images.pop((project, name), None) is not None

    def template_names(self, project="proj"):
        return sorted(name for (owner, name) in self.instance_templates if owner == project)


# ===================================================================
#  Request builders
# ===================================================================

def make_size(name="small", memory=16, cpus=4, **kwargs) -> SizeRequest:
    return SizeRequest(name=name, memory=memory, cpus=cpus, **kwargs)


def make_template_request(name="render", sizes=None, **kwargs) -> TemplateRequest:
    fields = {
        "project": "proj",
        "zone": "us-central1-a",
        "name": name,
        "image_family": "centos-7",
        "image_project": "centos-cloud",
        "sizes": sizes if sizes is not None else [make_size("small"), make_size("large", memory=64, cpus=16)],
    }
    fields.update(kwargs)
    return TemplateRequest(**fields)


def make_image_request(name="workstation", steps=None, **kwargs) -> ImageRequest:
    fields = {
        "project": "proj",
        "zone": "us-central1-a",
        "name": name,
        "image_family": "centos-7",
        "image_project": "centos-cloud",
        "steps": steps if steps is not None else ["tools", "teradici"],
        "metadata": {"teradici_registration_code": "ABC-123", "maya_license_server": "lic:27000"},
        "os_type": OSType.LINUX,
    }
    fields.update(kwargs)
    return ImageRequest(**fields)
