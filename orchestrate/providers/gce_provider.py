# orchestrate/providers/gce_provider.py
import concurrent.futures
import logging
import time
from typing import Dict, Iterable, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import compute_v1

from orchestrate.providers.interface import IComputeProvider, InstanceSpec, InstanceTemplateSpec
from orchestrate.services.exceptions import OperationTimeoutError, ProviderError
from orchestrate.services.provisioning_steps import OSType, ProvisioningStep
from orchestrate.utils.naming import region_of

logger = logging.getLogger(__name__)

STEP_METADATA_KEY = "orchestrate-step"
STEP_SCRIPT_METADATA_KEY = "orchestrate-step-script"
GUEST_ATTRIBUTE_NAMESPACE = "orchestrate/"

# gcloud-style scope aliases
SCOPE_ALIASES = {
    "default": [
        "https://www.googleapis.com/auth/devstorage.read_only",
        "https://www.googleapis.com/auth/logging.write",
        "https://www.googleapis.com/auth/monitoring.write",
        "https://www.googleapis.com/auth/servicecontrol",
        "https://www.googleapis.com/auth/service.management.readonly",
        "https://www.googleapis.com/auth/trace.append",
    ],
    "cloud-platform": ["https://www.googleapis.com/auth/cloud-platform"],
    "compute-ro": ["https://www.googleapis.com/auth/compute.readonly"],
    "compute-rw": ["https://www.googleapis.com/auth/compute"],
    "storage-ro": ["https://www.googleapis.com/auth/devstorage.read_only"],
    "storage-rw": ["https://www.googleapis.com/auth/devstorage.read_write"],
}


def expand_scopes(scopes: Iterable[str]) -> List[str]:
    expanded = []
    for scope in scopes:
        for url in SCOPE_ALIASES.get(scope, [scope]):
            if url not in expanded:
                expanded.append(url)
    return expanded


def accelerator_type(gpu_type: str) -> str:
    """t4-vws -> nvidia-tesla-t4-vws; full names pass through."""
    if gpu_type.startswith("nvidia-"):
        return gpu_type
    if gpu_type.split("-")[0] in ("l4", "h100", "h200", "a100"):
        return f"nvidia-{gpu_type}"
    return f"nvidia-tesla-{gpu_type}"


def custom_machine_type(cpus: int, memory_gb: int) -> str:
    return f"custom-{cpus}-{memory_gb * 1024}"


def _set(**fields):
    return {key: value for key, value in fields.items() if value is not None}


def _metadata(items: Dict[str, str], fingerprint: Optional[str] = None) -> compute_v1.Metadata:
    metadata = compute_v1.Metadata(items=[compute_v1.Items(key=key, value=value) for key, value in items.items()])
    if fingerprint:
        metadata.fingerprint = fingerprint
    return metadata


class GceComputeProvider(IComputeProvider):
    """
    IComputeProvider on Google Compute Engine.

    Provisioning steps are handed to the guest through instance metadata:
    `orchestrate-step` names the step and `orchestrate-step-script` points at
    its script under `steps_url`. The guest agent in the base image runs the
    script and reports through the guest attribute `orchestrate/step-<name>`,
    set to 'done' or to 'failed: <reason>'.
    """

    def __init__(self, instances_client, templates_client, images_client, projects_client,
                 addresses_client, steps_url: str, poll_interval: float = 10.0):
        self._instances = instances_client
        self._templates = templates_client
        self._images = images_client
        self._projects = projects_client
        self._addresses = addresses_client
        self.steps_url = steps_url.rstrip("/")
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings) -> "GceComputeProvider":
        return cls(
            instances_client=compute_v1.InstancesClient(),
            templates_client=compute_v1.InstanceTemplatesClient(),
            images_client=compute_v1.ImagesClient(),
            projects_client=compute_v1.ProjectsClient(),
            addresses_client=compute_v1.AddressesClient(),
            steps_url=settings.steps_url,
            poll_interval=settings.poll_interval,
        )

    def _wait(self, operation, timeout: float, description: str):
        try:
            return operation.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            raise OperationTimeoutError(f"Timed out after {timeout:.0f}s waiting to {description}.") from e
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e

    def _call(self, description: str, method, **request):
        try:
            return method(**request)
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e

    def verify_project_access(self, project: str) -> None:
        self._call(f"access project '{project}'", self._projects.get, project=project)

    def get_image_from_family(self, project: str, family: str) -> str:
        image = self._call(f"resolve image family '{project}/{family}'",
                           self._images.get_from_family, project=project, family=family)
        return image.self_link

    def create_instance_template(self, project: str, spec: InstanceTemplateSpec, timeout: float) -> None:
        properties = compute_v1.InstanceProperties(
            machine_type=custom_machine_type(spec.cpus, spec.memory),
            disks=[
                compute_v1.AttachedDisk(
                    boot=True,
                    auto_delete=True,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        **_set(source_image=spec.source_image, disk_size_gb=spec.disk_size, disk_type=spec.disk_type)
                    ),
                )
            ],
            network_interfaces=[self._network_interface(spec.network, spec.subnetwork, spec.region)],
            service_accounts=[compute_v1.ServiceAccount(email="default", scopes=expand_scopes(spec.scopes))],
            metadata=_metadata(spec.metadata),
        )
        if spec.gpu_type and spec.gpu_count:
            properties.guest_accelerators = [
                compute_v1.AcceleratorConfig(
                    accelerator_type=accelerator_type(spec.gpu_type),
                    accelerator_count=spec.gpu_count,
                )
            ]
            # GPU instances cannot live-migrate.
            properties.scheduling = compute_v1.Scheduling(on_host_maintenance="TERMINATE", automatic_restart=True)

        template = compute_v1.InstanceTemplate(name=spec.name, description=spec.description, properties=properties)
        description = f"create instance-template '{spec.name}'"
        logger.info("Creating instance-template %s in project %s", spec.name, project)
        operation = self._call(description, self._templates.insert,
                               project=project, instance_template_resource=template)
        self._wait(operation, timeout, description)

    def delete_instance_template(self, project: str, name: str, timeout: float) -> bool:
        description = f"delete instance-template '{name}'"
        logger.info("Deleting instance-template %s in project %s", name, project)
        try:
            operation = self._templates.delete(project=project, instance_template=name)
        except google_exceptions.NotFound:
            logger.info("Instance-template %s already absent", name)
            return False
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e
        self._wait(operation, timeout, description)
        return True

    def instance_template_exists(self, project: str, name: str) -> bool:
        try:
            self._templates.get(project=project, instance_template=name)
        except google_exceptions.NotFound:
            return False
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to look up instance-template '{name}': {e.message}") from e
        return True

    def create_instance(self, spec: InstanceSpec, timeout: float) -> str:
        instance = compute_v1.Instance(name=spec.name)
        region = region_of(spec.zone)

        if spec.instance_template is None:
            instance.machine_type = f"zones/{spec.zone}/machineTypes/{custom_machine_type(spec.cpus, spec.memory)}"
        if spec.source_image:
            instance.disks = [
                compute_v1.AttachedDisk(
                    boot=True,
                    auto_delete=True,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        **_set(source_image=spec.source_image, disk_size_gb=spec.disk_size)
                    ),
                )
            ]
        if spec.metadata is not None:
            instance.metadata = _metadata(spec.metadata)
        nat_ip = None
        if spec.network or spec.external_ip or spec.instance_template is None:
            interface = self._network_interface(spec.network, spec.subnetwork, region)
            if spec.external_ip:
                nat_ip = self._reserve_address(spec.project, region, f"{spec.name}-ip", timeout) if spec.static_ip else None
                interface.access_configs = [
                    compute_v1.AccessConfig(**_set(name="External NAT", type_="ONE_TO_ONE_NAT", nat_i_p=nat_ip))
                ]
            instance.network_interfaces = [interface]

        request = {"project": spec.project, "zone": spec.zone, "instance_resource": instance}
        if spec.instance_template:
            request["source_instance_template"] = f"projects/{spec.project}/global/instanceTemplates/{spec.instance_template}"

        description = f"create instance '{spec.name}'"
        logger.info("Creating instance %s in %s/%s", spec.name, spec.project, spec.zone)
        try:
            operation = self._call(description, self._instances.insert, **request)
            self._wait(operation, timeout, description)
        except ProviderError:
            if nat_ip:
                self._release_address(spec.project, region, f"{spec.name}-ip", timeout)
            raise
        return spec.name

    def _network_interface(self, network: Optional[str], subnetwork: Optional[str], region: str):
        interface = compute_v1.NetworkInterface(network=f"global/networks/{network or 'default'}")
        if subnetwork:
            interface.subnetwork = f"regions/{region}/subnetworks/{subnetwork}"
        return interface

    def _reserve_address(self, project: str, region: str, name: str, timeout: float) -> str:
        description = f"reserve static address '{name}'"
        operation = self._call(description, self._addresses.insert,
                               project=project, region=region, address_resource=compute_v1.Address(name=name))
        self._wait(operation, timeout, description)
        address = self._call(f"read static address '{name}'", self._addresses.get,
                             project=project, region=region, address=name)
        return address.address

    def _release_address(self, project: str, region: str, name: str, timeout: float) -> None:
        description = f"release static address '{name}'"
        logger.info("Rollback: releasing static address %s", name)
        try:
            operation = self._call(description, self._addresses.delete, project=project, region=region, address=name)
            self._wait(operation, timeout, description)
        except ProviderError as e:
            logger.warning("Rollback: failed to release static address %s: %s", name, e)

    def delete_instance(self, project: str, zone: str, name: str, timeout: float) -> bool:
        description = f"delete instance '{name}'"
        logger.info("Deleting instance %s in %s/%s", name, project, zone)
        try:
            operation = self._instances.delete(project=project, zone=zone, instance=name)
        except google_exceptions.NotFound:
            return False
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e
        self._wait(operation, timeout, description)
        return True

    def stop_instance(self, project: str, zone: str, name: str, timeout: float) -> None:
        description = f"stop instance '{name}'"
        operation = self._call(description, self._instances.stop, project=project, zone=zone, instance=name)
        self._wait(operation, timeout, description)

    def apply_step(self, project: str, zone: str, instance: str, step: ProvisioningStep,
                   metadata: Dict[str, str], os_type: OSType, timeout: float) -> None:
        current = self._call(f"read instance '{instance}'", self._instances.get,
                             project=project, zone=zone, instance=instance)
        items = {item.key: item.value for item in current.metadata.items}
        items.update(metadata)
        items[STEP_METADATA_KEY] = step.step_name
        items[STEP_SCRIPT_METADATA_KEY] = f"{self.steps_url}/{step.script_for(os_type)}"

        description = f"hand step '{step.step_name}' to instance '{instance}'"
        logger.info("Applying step %s to instance %s", step.step_name, instance)
        operation = self._call(description, self._instances.set_metadata,
                               project=project, zone=zone, instance=instance,
                               metadata_resource=_metadata(items, current.metadata.fingerprint))
        self._wait(operation, timeout, description)
        self._await_step(project, zone, instance, step, timeout)

    def _await_step(self, project: str, zone: str, instance: str, step: ProvisioningStep, timeout: float) -> None:
        attribute = f"step-{step.step_name}"
        deadline = time.monotonic() + timeout
        while True:
            value = self._read_guest_attribute(project, zone, instance, attribute)
            if value == "done":
                return
            if value and value.startswith("failed"):
                reason = value.partition(":")[2].strip() or "the guest reported failure"
                raise ProviderError(reason)
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(
                    f"Step '{step.step_name}' did not finish on '{instance}' within {timeout:.0f}s."
                )
            time.sleep(self.poll_interval)

    def _read_guest_attribute(self, project: str, zone: str, instance: str, key: str) -> Optional[str]:
        try:
            attributes = self._instances.get_guest_attributes(
                project=project, zone=zone, instance=instance, query_path=GUEST_ATTRIBUTE_NAMESPACE,
            )
        except google_exceptions.NotFound:
            # Nothing written under the namespace yet.
            return None
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to read guest attributes of '{instance}': {e.message}") from e
        for item in attributes.query_value.items:
            if item.key == key:
                return item.value
        return None

    def create_image(self, project: str, zone: str, name: str, source_instance: str,
                     timeout: float, description: str = "") -> str:
        image = compute_v1.Image(
            name=name,
            description=description,
            source_disk=f"projects/{project}/zones/{zone}/disks/{source_instance}",
        )
        what = f"capture image '{name}'"
        logger.info("Capturing image %s from instance %s", name, source_instance)
        operation = self._call(what, self._images.insert, project=project, image_resource=image)
        self._wait(operation, timeout, what)
        return name

    def delete_image(self, project: str, name: str, timeout: float) -> bool:
        description = f"delete image '{name}'"
        logger.info("Deleting image %s in project %s", name, project)
        try:
            operation = self._images.delete(project=project, image=name)
        except google_exceptions.NotFound:
            logger.info("Image %s already absent", name)
            return False
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e
        self._wait(operation, timeout, description)
        return True
