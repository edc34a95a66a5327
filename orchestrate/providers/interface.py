# orchestrate/providers/interface.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from orchestrate.services.provisioning_steps import OSType, ProvisioningStep


@dataclass
class InstanceTemplateSpec:
    """The provider-level shape of one template size."""
    name: str
    source_image: str
    cpus: int
    memory: int  # GB
    region: str
    gpu_type: Optional[str] = None
    gpu_count: int = 0
    disk_size: Optional[int] = None  # GB
    disk_type: Optional[str] = None
    network: Optional[str] = None
    subnetwork: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass
class InstanceSpec:
    """
    An instance to create, either from a provider instance-template or from
    an image directly (the transient builder used by image provisioning).

    Fields left as None fall back to what the instance-template defines.
    """
    project: str
    zone: str
    name: str
    instance_template: Optional[str] = None
    source_image: Optional[str] = None
    cpus: int = 4
    memory: int = 16  # GB
    disk_size: Optional[int] = None  # GB
    network: Optional[str] = None
    subnetwork: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    external_ip: bool = False
    static_ip: bool = False
    os_type: OSType = OSType.LINUX


class IComputeProvider(ABC):
    """
    The compute primitives the orchestration layer is built on.

    Every create/delete blocks until the provider's long-running operation
    finishes or `timeout` seconds pass (OperationTimeoutError). Provider
    failures surface as ProviderError. Deletes are idempotent and return
    False when the resource was already absent.
    """

    @abstractmethod
    def verify_project_access(self, project: str) -> None:
        """Raises ProviderError unless this service can act on the project."""
        pass

    @abstractmethod
    def get_image_from_family(self, project: str, family: str) -> str:
        """Returns a reference to the newest image of an image family."""
        pass

    @abstractmethod
    def create_instance(self, spec: InstanceSpec, timeout: float) -> str:
        pass

    @abstractmethod
    def delete_instance(self, project: str, zone: str, name: str, timeout: float) -> bool:
        pass

    @abstractmethod
    def stop_instance(self, project: str, zone: str, name: str, timeout: float) -> None:
        pass

    @abstractmethod
    def create_instance_template(self, project: str, spec: InstanceTemplateSpec, timeout: float) -> None:
        pass

    @abstractmethod
    def delete_instance_template(self, project: str, name: str, timeout: float) -> bool:
        pass

    @abstractmethod
    def instance_template_exists(self, project: str, name: str) -> bool:
        pass

    @abstractmethod
    def apply_step(self, project: str, zone: str, instance: str, step: ProvisioningStep,
                   metadata: Dict[str, str], os_type: OSType, timeout: float) -> None:
        """
        Runs one provisioning step on a running instance and waits for it.

        Args:
            metadata: Only the keys the step consumes.

        Raises:
            ProviderError: The step reported failure; the message carries the reason.
            OperationTimeoutError: The step did not report back within `timeout`.
        """
        pass

    @abstractmethod
    def create_image(self, project: str, zone: str, name: str, source_instance: str,
                     timeout: float, description: str = "") -> str:
        """Captures the boot disk of a stopped instance as a new image."""
        pass

    @abstractmethod
    def delete_image(self, project: str, name: str, timeout: float) -> bool:
        """Deletes an image. Returns False when it did not exist."""
        pass
