# orchestrate/providers/libvirt_provider.py
import base64
import json
import logging
import os
import shlex
import subprocess
import time
import uuid
from dataclasses import asdict
from typing import Dict

import libvirt
import libvirt_qemu

from orchestrate.providers.interface import IComputeProvider, InstanceSpec, InstanceTemplateSpec
from orchestrate.services.exceptions import OperationTimeoutError, ProviderError
from orchestrate.services.provisioning_steps import OSType, ProvisioningStep
from orchestrate.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)


class LibvirtComputeProvider(IComputeProvider):
    """
    IComputeProvider on a single libvirt/KVM host.

    libvirt has no notion of projects, images or instance-templates, so they
    are laid out under `image_dir`:

        <image_dir>/<project>/<image or family>.qcow2    images
        <image_dir>/templates/<project>/<name>.json      instance-templates
        <image_dir>/<instance>.qcow2                     instance disks (CoW)

    Provisioning steps run inside the guest through the QEMU guest agent.
    """

    def __init__(self, uri: str, image_dir: str, steps_url: str, poll_interval: float = 2.0, conn=None):
        self.image_dir = image_dir
        self.steps_url = steps_url.rstrip("/")
        self.poll_interval = poll_interval
        if conn is not None:
            self.conn = conn
            return
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise ProviderError(f"Failed to open connection to the hypervisor at '{uri}': {e}") from e

    @classmethod
    def from_settings(cls, settings) -> "LibvirtComputeProvider":
        return cls(settings.libvirt_uri, settings.image_dir, settings.steps_url, settings.poll_interval)

    # --- paths ---

    def _image_path(self, project: str, name: str) -> str:
        return os.path.join(self.image_dir, project, f"{name}.qcow2")

    def _template_path(self, project: str, name: str) -> str:
        return os.path.join(self.image_dir, "templates", project, f"{name}.json")

    def _disk_path(self, instance: str) -> str:
        return os.path.join(self.image_dir, f"{instance}.qcow2")

    def _qemu_img(self, *args: str, timeout: float = None) -> None:
        command = ["qemu-img", *args]
        try:
            subprocess.run(command, check=True, capture_output=True, text=True, timeout=timeout)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"'{' '.join(command)}' failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise OperationTimeoutError(f"'{' '.join(command)}' did not finish within {timeout:.0f}s.") from e
        except FileNotFoundError as e:
            raise ProviderError("qemu-img command not found. Install qemu-utils.") from e

    def _lookup(self, name: str):
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ProviderError(f"Failed to look up domain '{name}': {e}") from e

    # --- projects and images ---

    def verify_project_access(self, project: str) -> None:
        try:
            alive = self.conn.isAlive()
        except libvirt.libvirtError as e:
            raise ProviderError(f"Hypervisor connection is unusable: {e}") from e
        if not alive:
            raise ProviderError("Hypervisor connection is closed.")
        os.makedirs(os.path.join(self.image_dir, project), exist_ok=True)

    def get_image_from_family(self, project: str, family: str) -> str:
        path = self._image_path(project, family)
        if not os.path.exists(path):
            raise ProviderError(f"Image family '{project}/{family}' not found at {path}.")
        return path

    def create_image(self, project: str, zone: str, name: str, source_instance: str,
                     timeout: float, description: str = "") -> str:
        target = self._image_path(project, name)
        if os.path.exists(target):
            raise ProviderError(f"Image '{project}/{name}' already exists.")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        logger.info("Capturing image %s from instance %s", target, source_instance)
        try:
            # convert flattens the backing chain into a standalone image
            self._qemu_img("convert", "-O", "qcow2", self._disk_path(source_instance), target, timeout=timeout)
        except ProviderError:
            if os.path.exists(target):
                os.remove(target)
            raise
        return target

    def delete_image(self, project: str, name: str, timeout: float) -> bool:
        try:
            os.remove(self._image_path(project, name))
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ProviderError(f"Failed to delete image '{project}/{name}': {e}") from e
        return True

    # --- instance-templates ---

    def create_instance_template(self, project: str, spec: InstanceTemplateSpec, timeout: float) -> None:
        path = self._template_path(project, spec.name)
        if os.path.exists(path):
            raise ProviderError(f"Instance-template '{spec.name}' already exists.")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(spec), f, indent=2)
        logger.info("Created instance-template %s", path)

    def delete_instance_template(self, project: str, name: str, timeout: float) -> bool:
        path = self._template_path(project, name)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ProviderError(f"Failed to delete instance-template '{name}': {e}") from e
        return True

    def instance_template_exists(self, project: str, name: str) -> bool:
        return os.path.exists(self._template_path(project, name))

    def _load_template(self, project: str, name: str) -> InstanceTemplateSpec:
        try:
            with open(self._template_path(project, name)) as f:
                return InstanceTemplateSpec(**json.load(f))
        except FileNotFoundError as e:
            raise ProviderError(f"Instance-template '{name}' not found.") from e

    # --- instances ---

    def create_instance(self, spec: InstanceSpec, timeout: float) -> str:
        if self._lookup(spec.name) is not None:
            raise ProviderError(f"Instance '{spec.name}' already exists.")

        cpus, memory, disk_size = spec.cpus, spec.memory, spec.disk_size
        source_image, network, metadata = spec.source_image, spec.network, spec.metadata
        if spec.instance_template:
            template = self._load_template(spec.project, spec.instance_template)
            cpus, memory = template.cpus, template.memory
            disk_size = disk_size or template.disk_size
            source_image = source_image or template.source_image
            network = network or template.network
            metadata = template.metadata if metadata is None else metadata
        if not source_image:
            raise ProviderError(f"Instance '{spec.name}' has no source image.")

        disk_path = self._disk_path(spec.name)
        domain = None
        try:
            size_args = [f"{disk_size}G"] if disk_size else []
            self._qemu_img("create", "-f", "qcow2", "-F", "qcow2", "-b", source_image, disk_path, *size_args)
            xml_config = generate_vm_xml(
                spec.name, str(uuid.uuid4()), cpus, memory * 1024, disk_path,
                network=network or "default", metadata=metadata,
            )
            domain = self.conn.defineXML(xml_config)
            if domain.create() < 0:
                raise ProviderError(f"Failed to start instance '{spec.name}' after definition.")
        except (libvirt.libvirtError, ProviderError) as e:
            logger.warning("Instance %s creation failed: %s. Rolling back.", spec.name, e)
            self._rollback_instance(domain, disk_path)
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(f"Failed to create instance '{spec.name}': {e}") from e
        return spec.name

    def _rollback_instance(self, domain, disk_path):
        if domain:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("Rollback: failed to clean up libvirt domain: %s", e)
        if disk_path and os.path.exists(disk_path):
            os.remove(disk_path)

    def delete_instance(self, project: str, zone: str, name: str, timeout: float) -> bool:
        domain = self._lookup(name)
        if domain is None:
            return False
        try:
            if domain.isActive():
                domain.destroy()
            domain.undefine()
        except libvirt.libvirtError as e:
            raise ProviderError(f"Failed to delete instance '{name}': {e}") from e
        disk_path = self._disk_path(name)
        if os.path.exists(disk_path):
            os.remove(disk_path)
        return True

    def stop_instance(self, project: str, zone: str, name: str, timeout: float) -> None:
        domain = self._lookup(name)
        if domain is None:
            raise ProviderError(f"Instance '{name}' not found.")
        try:
            if not domain.isActive():
                return
            domain.shutdown()
            deadline = time.monotonic() + timeout
            while domain.isActive():
                if time.monotonic() >= deadline:
                    raise OperationTimeoutError(f"Instance '{name}' did not shut down within {timeout:.0f}s.")
                time.sleep(self.poll_interval)
        except libvirt.libvirtError as e:
            raise ProviderError(f"Failed to stop instance '{name}': {e}") from e

    # --- provisioning ---

    def _agent(self, domain, command: str, arguments: Dict) -> Dict:
        payload = json.dumps({"execute": command, "arguments": arguments})
        try:
            reply = libvirt_qemu.qemuAgentCommand(domain, payload, libvirt_qemu.VIR_DOMAIN_QEMU_AGENT_COMMAND_DEFAULT, 0)
        except libvirt.libvirtError as e:
            raise ProviderError(f"Guest agent command '{command}' failed: {e}") from e
        return json.loads(reply)["return"]

    def apply_step(self, project: str, zone: str, instance: str, step: ProvisioningStep,
                   metadata: Dict[str, str], os_type: OSType, timeout: float) -> None:
        domain = self._lookup(instance)
        if domain is None:
            raise ProviderError(f"Instance '{instance}' not found.")

        script_url = f"{self.steps_url}/{step.script_for(os_type)}"
        env = [f"ORCHESTRATE_{key.upper()}={value}" for key, value in metadata.items()]
        if os_type is OSType.WINDOWS:
            path, args = "powershell.exe", ["-NoProfile", "-Command", f"iex (iwr -UseBasicParsing {script_url}).Content"]
        else:
            path, args = "/bin/sh", ["-c", f"curl -fsSL {shlex.quote(script_url)} | sh"]

        logger.info("Applying step %s to instance %s", step.step_name, instance)
        pid = self._agent(domain, "guest-exec", {"path": path, "arg": args, "env": env, "capture-output": True})["pid"]

        deadline = time.monotonic() + timeout
        while True:
            status = self._agent(domain, "guest-exec-status", {"pid": pid})
            if status.get("exited"):
                break
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(
                    f"Step '{step.step_name}' did not finish on '{instance}' within {timeout:.0f}s."
                )
            time.sleep(self.poll_interval)

        if status.get("exitcode", 0) != 0:
            stderr = base64.b64decode(status.get("err-data", "")).decode("utf-8", "replace").strip()
            raise ProviderError(f"exit code {status.get('exitcode')}: {stderr or 'no output'}")

    def __del__(self):
        conn = getattr(self, "conn", None)
        if conn:
            try:
                conn.close()
            except libvirt.libvirtError as e:
                logger.debug("Hypervisor connection already closed: %s", e)
