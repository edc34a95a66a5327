# orchestrate/services/orchestrate_service.py
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional, Union

from orchestrate.database import models
from orchestrate.services.compute_service import ComputeService
from orchestrate.services.exceptions import ConflictError, InvalidStateError, NotFoundError, OrchestrateError, ValidationError
from orchestrate.services.image_service import ImageService
from orchestrate.services.operation_tracker import OperationTracker
from orchestrate.services.project_service import ProjectService
from orchestrate.services.requests import ImageRequest, InstanceRequest, SizeRequest, TemplateRequest
from orchestrate.services.template_service import TemplateService
from orchestrate.utils.key_lock import KeyedLock

logger = logging.getLogger(__name__)


class OrchestrateService:
    """
    The service façade.

    Every mutating call validates its request synchronously (raising on bad
    input, with no operation recorded), records an Operation, hands the work
    to the worker pool and returns {'status', 'request_id'} without waiting.
    The outcome is only visible on the Operation record afterwards.
    """

    def __init__(self, project_service: ProjectService, template_service: TemplateService,
                 image_service: ImageService, compute_service: ComputeService,
                 tracker: OperationTracker, max_workers: int = 8,
                 release_session: Optional[Callable[[], None]] = None,
                 locks: Optional[KeyedLock] = None):
        """
        Args:
            release_session: Called in the worker thread after each request,
                typically scoped_session.remove, so no session outlives its request.
            locks: Shared with the services. Template creation and project
                deregistration hold the project key, so a template is never
                stored in a project that was deregistered meanwhile.
        """
        self.project_service = project_service
        self.template_service = template_service
        self.image_service = image_service
        self.compute_service = compute_service
        self.tracker = tracker
        self.release_session = release_session
        self.locks = locks or template_service.locks
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="orchestrate-worker")
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # RPCs
    # ------------------------------------------------------------------

    def create_image(self, image: Union[ImageRequest, Mapping[str, Any]]) -> Dict[str, str]:
        request = image if isinstance(image, ImageRequest) else ImageRequest.from_dict(image)
        self.project_service.require_registered(request.project)
        self.image_service.accept_image(request)
        return self._accept("CreateImage", f"Creating image {request.name}.",
                            self.image_service.build_image, request)

    def create_template(self, template: Union[TemplateRequest, Mapping[str, Any]]) -> Dict[str, str]:
        request = template if isinstance(template, TemplateRequest) else TemplateRequest.from_dict(template)
        self.project_service.require_registered(request.project)
        self.template_service.validate_new_template(request)
        return self._accept("CreateTemplate", f"Creating template {request.name}.",
                            self._create_template, request)

    def delete_template(self, project: str, name: str, zone: Optional[str] = None) -> Dict[str, str]:
        self._require_fields(project=project, name=name)
        self.project_service.require_registered(project)
        self.template_service.find_template(project, name, zone)
        return self._accept("DeleteTemplate", f"Deleting template {name}.",
                            self._delete_template, project, name, zone)

    def add_size(self, project: str, zone: str, template: str,
                 size: Union[SizeRequest, Mapping[str, Any]]) -> Dict[str, str]:
        self._require_fields(project=project, zone=zone, template=template)
        request = size if isinstance(size, SizeRequest) else SizeRequest.from_dict(size)
        self.project_service.require_registered(project)
        if self.template_service.get_template(project, zone, template).find_size(request.name):
            raise ConflictError(f"Template '{template}' already has a size '{request.name}'.")
        return self._accept("AddSize", f"Adding size {request.name} to template {template}.",
                            self._add_size, project, zone, template, request)

    def delete_size(self, project: str, zone: str, template: str, size_name: str) -> Dict[str, str]:
        self._require_fields(project=project, zone=zone, template=template, size=size_name)
        self.project_service.require_registered(project)
        record = self.template_service.get_template(project, zone, template)
        if not record.find_size(size_name):
            raise NotFoundError(f"Size '{size_name}' not found in template '{template}'.")
        if record.default_size_name == size_name:
            raise InvalidStateError(
                f"Size '{size_name}' is the default of template '{template}'; set another default first."
            )
        return self._accept("DeleteSize", f"Deleting size {size_name} of template {template}.",
                            self._delete_size, project, zone, template, size_name)

    def set_default_size(self, project: str, zone: str, template: str, size_name: str) -> Dict[str, str]:
        self._require_fields(project=project, zone=zone, template=template, size=size_name)
        self.project_service.require_registered(project)
        if not self.template_service.get_template(project, zone, template).find_size(size_name):
            raise NotFoundError(f"Size '{size_name}' not found in template '{template}'.")
        return self._accept("SetDefaultSize", f"Setting default size of template {template} to {size_name}.",
                            self._set_default_size, project, zone, template, size_name)

    def create_instance(self, instance: Union[InstanceRequest, Mapping[str, Any]]) -> Dict[str, str]:
        request = instance if isinstance(instance, InstanceRequest) else InstanceRequest.from_dict(instance)
        self.project_service.require_registered(request.project)
        _, _, name = self.compute_service.resolve_instance(request)
        if not request.name:
            # Pin the resolved name so the worker creates exactly what was reported.
            request.name = name
        response = self._accept("CreateInstance", f"Creating instance {name}.",
                                self._create_instance, request)
        response["name"] = name
        return response

    def register_project(self, project: str) -> Dict[str, str]:
        self._require_fields(project=project)
        return self._accept("RegisterProject", f"Registering project {project}.",
                            self._register_project, project)

    def deregister_project(self, project: str) -> Dict[str, str]:
        self._require_fields(project=project)
        self.project_service.check_deregistrable(project)
        return self._accept("DeregisterProject", f"Deregistering project {project}.",
                            self._deregister_project, project)

    def get_operation(self, request_id: str) -> Dict[str, Any]:
        return self.tracker.get(request_id).to_dict()

    def wait(self, request_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Blocks until an accepted request has finished; for tests and tooling."""
        with self._futures_lock:
            future = self._futures.get(request_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_operation(request_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # units of work, run on the pool
    # ------------------------------------------------------------------

    def _create_template(self, request: TemplateRequest) -> str:
        with self.locks.hold((request.project,)):
            self.project_service.require_registered(request.project)
            template = self.template_service.create_template(request)
        sizes = ", ".join(f"{size.name} ({size.instance_template})" for size in template.sizes)
        return f"Template {template.name} created with sizes: {sizes}."

    def _delete_template(self, project: str, name: str, zone: Optional[str]) -> str:
        removed = self.template_service.delete_template(project, name, zone)
        return f"Template {name} deleted with {len(removed)} instance-template(s)."

    def _add_size(self, project: str, zone: str, template: str, size: SizeRequest) -> str:
        self.template_service.add_size(project, zone, template, size)
        return f"Size {size.name} added to template {template}."

    def _delete_size(self, project: str, zone: str, template: str, size_name: str) -> str:
        self.template_service.delete_size(project, zone, template, size_name)
        return f"Size {size_name} removed from template {template}."

    def _set_default_size(self, project: str, zone: str, template: str, size_name: str) -> str:
        self.template_service.set_default_size(project, zone, template, size_name)
        return f"Default size of template {template} is now {size_name}."

    def _create_instance(self, request: InstanceRequest) -> str:
        self.project_service.require_registered(request.project)
        name = self.compute_service.create_instance(request)
        return f"Instance {name} created."

    def _register_project(self, project: str) -> str:
        self.project_service.register_project(project)
        return f"Project {project} registered."

    def _deregister_project(self, project: str) -> str:
        with self.locks.hold((project,)):
            self.project_service.deregister_project(project)
        return f"Project {project} deregistered."

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _require_fields(**fields: Optional[str]) -> None:
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}.")

    def _accept(self, kind: str, status: str, work: Callable[..., str], *args) -> Dict[str, str]:
        operation = self.tracker.begin(kind)
        request_id = operation.request_id
        with self._futures_lock:
            future = self._executor.submit(self._execute, request_id, work, *args)
            self._futures[request_id] = future
        future.add_done_callback(lambda done: self._forget(request_id, done))
        return {"status": status, "request_id": request_id}

    def _forget(self, request_id: str, future: Future) -> None:
        with self._futures_lock:
            self._futures.pop(request_id, None)
        error = future.exception()
        if error is not None:
            logger.error("Operation %s could not record its outcome: %r", request_id, error)

    def _execute(self, request_id: str, work: Callable[..., str], *args) -> None:
        try:
            self.tracker.transition(request_id, models.Operation.RUNNING)
            try:
                detail = work(*args)
            except OrchestrateError as e:
                self.tracker.transition(request_id, models.Operation.FAILED, str(e), e.kind)
                return
            except Exception as e:
                logger.exception("Operation %s failed unexpectedly", request_id)
                self.tracker.transition(request_id, models.Operation.FAILED, str(e) or repr(e), "InternalError")
                return
            self.tracker.transition(request_id, models.Operation.SUCCEEDED, detail)
        finally:
            if self.release_session is not None:
                self.release_session()
