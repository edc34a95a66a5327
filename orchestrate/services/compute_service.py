# orchestrate/services/compute_service.py
import logging
from typing import Any, Dict, Tuple

from orchestrate.database import models
from orchestrate.providers.interface import IComputeProvider, InstanceSpec
from orchestrate.services.requests import InstanceRequest
from orchestrate.services.template_service import TemplateService
from orchestrate.utils.naming import region_of, resolve

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_NAME_PATTERN = "{template}-{size}-{user}"


class ComputeService:
    """Creates instances from a template size."""

    def __init__(self, template_service: TemplateService, provider: IComputeProvider,
                 operation_timeout: float = 600.0, default_user: str = "orchestrate"):
        self.template_service = template_service
        self.provider = provider
        self.operation_timeout = operation_timeout
        self.default_user = default_user

    def naming_context(self, request: InstanceRequest, template: models.Template, size: models.Size) -> Dict[str, Any]:
        context = {
            "type": template.name,
            "template": template.name,
            "size": size.name,
            "project": request.project,
            "zone": request.zone,
            "region": region_of(request.zone),
            "user": request.metadata.get("user") or self.default_user,
        }
        if size.gpu_count:
            context["gpu_count"] = size.gpu_count
            context["gpu_type"] = size.gpu_type
        return context

    def resolve_instance(self, request: InstanceRequest) -> Tuple[models.Template, models.Size, str]:
        """
        Picks the template size and the instance name for a request.

        The caller's name wins; otherwise the template's naming pattern is
        resolved.

        Returns:
            (template, size, instance name)

        Raises:
            NotFoundError: No such template or size.
            PatternError: The naming pattern needs a token the request cannot supply.
        """
        template, size = self.template_service.resolve_size(request.project, request.zone, request.template, request.size)
        name = request.name
        if not name:
            pattern = template.instance_name_pattern or DEFAULT_INSTANCE_NAME_PATTERN
            name = resolve(pattern, self.naming_context(request, template, size))
        return template, size, name

    def create_instance(self, request: InstanceRequest) -> str:
        """
        Creates the instance from the size's provider instance-template.

        Returns:
            The instance name.
        """
        template, size, name = self.resolve_instance(request)
        metadata = {
            **(template.template_metadata or {}),
            **(size.size_metadata or {}),
            **request.metadata,
        }
        source_image = None
        if request.use_latest_image:
            source_image = self.provider.get_image_from_family(template.image_project, template.image_family)

        spec = InstanceSpec(
            project=request.project,
            zone=request.zone,
            name=name,
            instance_template=size.instance_template,
            source_image=source_image,
            disk_size=size.disk_size,
            network=template.network,
            subnetwork=template.subnetwork,
            metadata=metadata,
            external_ip=request.use_external_ip,
            static_ip=template.static_ip,
        )
        logger.info("Creating instance %s from %s (template %s, size %s)",
                    name, size.instance_template, template.name, size.name)
        self.provider.create_instance(spec, self.operation_timeout)
        return name
