# orchestrate/services/template_service.py
import logging
from typing import Dict, List, Optional, Tuple

from orchestrate.database import models
from orchestrate.providers.interface import IComputeProvider, InstanceTemplateSpec
from orchestrate.repositories.interfaces import ITemplateRepository
from orchestrate.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OperationTimeoutError,
    OrchestrateError,
    PartialCreateError,
    PartialDeleteError,
    ValidationError,
)
from orchestrate.services.requests import SizeRequest, TemplateRequest
from orchestrate.utils.key_lock import KeyedLock
from orchestrate.utils.naming import region_of, validate_pattern

logger = logging.getLogger(__name__)


def instance_template_name(template_name: str, size_name: str) -> str:
    """The provider instance-template backing one size of a template."""
    return f"{template_name}-{size_name}"


class TemplateService:
    """
    Keeps every Template's sizes and their provider instance-templates in step.

    For each Size of a stored Template exactly one provider instance-template
    named `<template>-<size>` exists. Mutations of the same template are
    serialized on a per-(project, template name) lock; the name is the key
    because provider instance-templates are project-global.
    """

    def __init__(self, template_repo: ITemplateRepository, provider: IComputeProvider,
                 operation_timeout: float = 600.0, locks: Optional[KeyedLock] = None):
        self.template_repo = template_repo
        self.provider = provider
        self.operation_timeout = operation_timeout
        self.locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def validate_new_template(self, request: TemplateRequest) -> None:
        """
        Checks a create request without touching the provider.

        Raises:
            ValidationError: No sizes, repeated size names, or a default size
                that is not among the sizes.
            PatternError: The instance name pattern uses unknown tokens.
            ConflictError: The name is taken in the project.
        """
        if not request.sizes:
            raise ValidationError(f"Template '{request.name}' must declare at least one size.")
        names = [size.name for size in request.sizes]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate size name(s) in template '{request.name}': {', '.join(duplicates)}.")
        if request.default_size_name and request.default_size_name not in names:
            raise ValidationError(
                f"Default size '{request.default_size_name}' is not one of the sizes of template '{request.name}'."
            )
        if request.instance_name_pattern:
            validate_pattern(request.instance_name_pattern)
        self._check_name_available(request.project, request.zone, request.name)

    def _check_name_available(self, project: str, zone: str, name: str) -> None:
        existing = self.template_repo.list_by_name(project, name)
        if any(template.zone == zone for template in existing):
            raise ConflictError(f"Template '{name}' already exists in {project}/{zone}.")
        if existing:
            raise ConflictError(
                f"Template '{name}' already exists in zone '{existing[0].zone}' of project '{project}'; "
                f"its instance-templates would collide."
            )

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def get_template(self, project: str, zone: str, name: str) -> models.Template:
        template = self.template_repo.find(project, zone, name)
        if not template:
            raise NotFoundError(f"Template '{name}' not found in {project}/{zone}.")
        return template

    def find_template(self, project: str, name: str, zone: Optional[str] = None) -> models.Template:
        """
        Looks a template up by project and name, the zone being optional.

        Raises:
            NotFoundError: No such template.
            ValidationError: The name exists in several zones and no zone was given.
        """
        candidates = [
            template for template in self.template_repo.list_by_name(project, name)
            if zone is None or template.zone == zone
        ]
        if not candidates:
            raise NotFoundError(f"Template '{name}' not found in project '{project}'.")
        if len(candidates) > 1:
            zones = ", ".join(template.zone for template in candidates)
            raise ValidationError(f"Template '{name}' exists in several zones ({zones}); specify one.")
        return candidates[0]

    def list_templates(self, project: str) -> List[models.Template]:
        return self.template_repo.list_by_project(project)

    def resolve_size(self, project: str, zone: str, template_name: str,
                     size_name: Optional[str] = None) -> Tuple[models.Template, models.Size]:
        """
        Returns the (template, size) pair an instance is created from.

        An empty size name selects the template's default size.
        """
        template = self.get_template(project, zone, template_name)
        size_name = size_name or template.default_size_name
        size = template.find_size(size_name) if size_name else None
        if not size:
            raise NotFoundError(f"Size '{size_name}' not found in template '{template_name}'.")
        return template, size

    def find_missing_instance_templates(self, template: models.Template) -> List[str]:
        """Lists the sizes whose provider instance-template is gone."""
        return [
            size.name for size in template.sizes
            if not self.provider.instance_template_exists(template.project, size.instance_template)
        ]

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def create_template(self, request: TemplateRequest) -> models.Template:
        """
        Creates the provider instance-template of every size, then the record.

        Sizes are created in declaration order. If one fails, the ones
        already created are deleted again before the error is raised, so a
        template is never left half-materialized.

        Returns:
            The stored template.

        Raises:
            ValidationError, ConflictError, PatternError: Before any provider call.
            PartialCreateError: Size K failed after sizes 1..K-1 were created
                (and have been rolled back).
            ProviderError: The first provider call failed; nothing was created.
        """
        with self.locks.hold((request.project, request.name)):
            self.validate_new_template(request)
            source_image = self.provider.get_image_from_family(request.image_project, request.image_family)

            created: List[str] = []
            for size in request.sizes:
                spec = self._instance_template_spec(request, size, source_image)
                try:
                    self.provider.create_instance_template(request.project, spec, self.operation_timeout)
                except OrchestrateError as e:
                    # A create that timed out may still complete on the provider side.
                    pending = [spec.name] if isinstance(e, OperationTimeoutError) else []
                    if not created:
                        _, leftovers = self._rollback(request.project, pending)
                        raise e.add_leftovers(leftovers)
                    rolled_back, leftovers = self._rollback(request.project, created + pending)
                    raise PartialCreateError(
                        f"Creating size '{size.name}' of template '{request.name}' failed: {e}. "
                        f"Rolled back: {', '.join(rolled_back) or 'none'}.",
                        failed_resource=spec.name,
                        rolled_back=rolled_back,
                        leftovers=leftovers,
                    ) from e
                created.append(spec.name)

            template = self._to_model(request)
            try:
                template = self.template_repo.create(template)
            except Exception as e:
                logger.exception("Storing template %s failed; removing its instance-templates", request.name)
                self._raise_if_stranded(e, request.name, *self._rollback(request.project, created))
                raise

        logger.info("Template %s created in %s/%s with %d size(s)",
                    request.name, request.project, request.zone, len(created))
        return template

    def add_size(self, project: str, zone: str, template_name: str, size: SizeRequest) -> models.Template:
        """
        Adds one size: creates its provider instance-template, then records it.

        The first size of a template without a default becomes the default.

        Raises:
            NotFoundError: No such template.
            ConflictError: The template already has a size with this name.
        """
        with self.locks.hold((project, template_name)):
            template = self.get_template(project, zone, template_name)
            if template.find_size(size.name):
                raise ConflictError(f"Template '{template_name}' already has a size '{size.name}'.")

            source_image = self.provider.get_image_from_family(template.image_project, template.image_family)
            spec = self._instance_template_spec(template, size, source_image)
            try:
                self.provider.create_instance_template(project, spec, self.operation_timeout)
            except OperationTimeoutError as e:
                # The create may still complete on the provider side.
                _, leftovers = self._rollback(project, [spec.name])
                raise e.add_leftovers(leftovers)

            position = max((existing.position for existing in template.sizes), default=-1) + 1
            template.sizes.append(self._size_model(size, template.name, position))
            if not template.default_size_name:
                template.default_size_name = size.name
            try:
                template = self.template_repo.save(template)
            except Exception as e:
                logger.exception("Recording size %s of template %s failed; removing %s",
                                 size.name, template_name, spec.name)
                self._raise_if_stranded(e, template_name, *self._rollback(project, [spec.name]))
                raise

        logger.info("Size %s added to template %s", size.name, template_name)
        return template

    def delete_size(self, project: str, zone: str, template_name: str, size_name: str) -> models.Template:
        """
        Removes one size and its provider instance-template.

        Raises:
            NotFoundError: No such template or size.
            InvalidStateError: The size is the template's default; pick
                another default first.
        """
        with self.locks.hold((project, template_name)):
            template = self.get_template(project, zone, template_name)
            size = template.find_size(size_name)
            if not size:
                raise NotFoundError(f"Size '{size_name}' not found in template '{template_name}'.")
            if template.default_size_name == size_name:
                raise InvalidStateError(
                    f"Size '{size_name}' is the default of template '{template_name}'; set another default first."
                )

            if not self.provider.delete_instance_template(project, size.instance_template, self.operation_timeout):
                logger.info("Instance-template %s was already gone", size.instance_template)
            template.sizes.remove(size)
            template = self.template_repo.save(template)

        logger.info("Size %s removed from template %s", size_name, template_name)
        return template

    def set_default_size(self, project: str, zone: str, template_name: str, size_name: str) -> models.Template:
        """
        Raises:
            NotFoundError: No such template or size.
        """
        with self.locks.hold((project, template_name)):
            template = self.get_template(project, zone, template_name)
            if not template.find_size(size_name):
                raise NotFoundError(f"Size '{size_name}' not found in template '{template_name}'.")
            template.default_size_name = size_name
            return self.template_repo.save(template)

    def delete_template(self, project: str, name: str, zone: Optional[str] = None) -> List[str]:
        """
        Deletes every size's provider instance-template, then the record.

        A failing delete does not stop the others. The record is removed in
        any case, and the failures are reported afterwards. Instance-templates
        that are already gone count as deleted.

        Returns:
            The instance-templates that were removed.

        Raises:
            NotFoundError: No such template (also on a repeated call).
            PartialDeleteError: Naming each instance-template that could not be removed.
        """
        with self.locks.hold((project, name)):
            template = self.find_template(project, name, zone)
            removed: List[str] = []
            failures: Dict[str, str] = {}
            for size in template.sizes:
                try:
                    self.provider.delete_instance_template(project, size.instance_template, self.operation_timeout)
                except OrchestrateError as e:
                    logger.error("Deleting instance-template %s failed: %s", size.instance_template, e)
                    failures[size.instance_template] = str(e)
                    continue
                removed.append(size.instance_template)
            self.template_repo.delete(template)

        if failures:
            raise PartialDeleteError(
                f"Template '{name}' deleted, but {len(failures)} instance-template(s) could not be removed: "
                + "; ".join(f"{resource}: {reason}" for resource, reason in failures.items()),
                failures=failures,
            )
        logger.info("Template %s deleted from project %s", name, project)
        return removed

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _rollback(self, project: str, created: List[str]) -> Tuple[List[str], List[str]]:
        rolled_back, leftovers = [], []
        for resource in reversed(created):
            try:
                self.provider.delete_instance_template(project, resource, self.operation_timeout)
            except OrchestrateError as e:
                logger.error("Rollback: could not delete instance-template %s: %s", resource, e)
                leftovers.append(resource)
                continue
            rolled_back.append(resource)
        return rolled_back, leftovers

    @staticmethod
    def _raise_if_stranded(error: Exception, template_name: str,
                           rolled_back: List[str], leftovers: List[str]) -> None:
        """Turns a failed record write into PartialCreateError when its rollback left resources behind."""
        if not leftovers:
            return
        if isinstance(error, OrchestrateError):
            raise error.add_leftovers(leftovers)
        raise PartialCreateError(
            f"Recording template '{template_name}' failed: {error}. "
            f"Rolled back: {', '.join(rolled_back) or 'none'}.",
            rolled_back=rolled_back,
            leftovers=leftovers,
        ) from error

    def _instance_template_spec(self, template, size: SizeRequest, source_image: str) -> InstanceTemplateSpec:
        shared_metadata = template.metadata if isinstance(template, TemplateRequest) else template.template_metadata
        return InstanceTemplateSpec(
            name=instance_template_name(template.name, size.name),
            source_image=source_image,
            cpus=size.cpus,
            memory=size.memory,
            region=region_of(template.zone),
            gpu_type=size.gpu_type,
            gpu_count=size.gpu_count,
            disk_size=size.disk_size,
            disk_type=size.disk_type,
            network=template.network,
            subnetwork=template.subnetwork,
            scopes=list(template.scopes or []),
            metadata={**(shared_metadata or {}), **size.metadata},
            description=f"Size '{size.name}' of orchestrate template '{template.name}'.",
        )

    def _size_model(self, size: SizeRequest, template_name: str, position: int) -> models.Size:
        return models.Size(
            position=position,
            name=size.name,
            memory=size.memory,
            cpus=size.cpus,
            gpu_type=size.gpu_type,
            gpu_count=size.gpu_count,
            disk_size=size.disk_size,
            disk_type=size.disk_type,
            size_metadata=dict(size.metadata),
            instance_template=instance_template_name(template_name, size.name),
        )

    def _to_model(self, request: TemplateRequest) -> models.Template:
        return models.Template(
            project=request.project,
            zone=request.zone,
            name=request.name,
            image_family=request.image_family,
            image_project=request.image_project,
            network=request.network,
            subnetwork=request.subnetwork,
            static_ip=request.static_ip,
            scopes=list(request.scopes),
            instance_name_pattern=request.instance_name_pattern,
            default_size_name=request.default_size_name or request.sizes[0].name,
            template_metadata=dict(request.metadata),
            sizes=[self._size_model(size, request.name, position) for position, size in enumerate(request.sizes)],
        )
