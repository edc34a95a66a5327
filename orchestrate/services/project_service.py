# orchestrate/services/project_service.py
import logging
from datetime import datetime

from orchestrate.database import models
from orchestrate.providers.interface import IComputeProvider
from orchestrate.repositories.interfaces import IImageRepository, IProjectRepository, ITemplateRepository
from orchestrate.services.exceptions import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class ProjectService:
    """Registers cloud projects for orchestration and guards access to them."""

    def __init__(self, project_repo: IProjectRepository, template_repo: ITemplateRepository,
                 image_repo: IImageRepository, provider: IComputeProvider):
        """
        Args:
            project_repo: Repository of project records.
            template_repo: Used to refuse deregistration while templates exist.
            image_repo: Used to refuse deregistration while images exist.
            provider: Verifies this service can reach a project before registering it.
        """
        self.project_repo = project_repo
        self.template_repo = template_repo
        self.image_repo = image_repo
        self.provider = provider

    def require_registered(self, name: str) -> models.Project:
        """
        Raises:
            NotFoundError: The project is unknown or not registered.
        """
        project = self.project_repo.find_by_name(name)
        if not project or not project.registered:
            raise NotFoundError(f"Project '{name}' is not registered for orchestration.")
        return project

    def register_project(self, name: str) -> models.Project:
        """
        Registers a project. Registering an already registered project is a no-op.

        Raises:
            ProviderError: The project cannot be reached with this service's credentials.
        """
        self.provider.verify_project_access(name)
        project = self.project_repo.find_by_name(name)
        if project and project.registered:
            logger.info("Project %s is already registered", name)
            return project
        if not project:
            project = models.Project(name=name)
        project.registered = True
        project.registered_at = datetime.now()
        project.deregistered_at = None
        project = self.project_repo.save(project) if project.id else self.project_repo.create(project)
        logger.info("Project %s registered", name)
        return project

    def check_deregistrable(self, name: str) -> models.Project:
        """
        Raises:
            NotFoundError: The project is not registered.
            ConflictError: Templates or images still exist in the project.
        """
        project = self.require_registered(name)
        templates = self.template_repo.count_by_project(name)
        # Finished images belong to the provider's own tooling; only builds in flight count.
        images = self.image_repo.count_by_project(name, statuses=[models.Image.STATUS_CREATING])
        if templates or images:
            raise ConflictError(
                f"Project '{name}' still has {templates} template(s) and {images} image build(s) in progress."
            )
        return project

    def deregister_project(self, name: str) -> models.Project:
        project = self.check_deregistrable(name)
        project.registered = False
        project.deregistered_at = datetime.now()
        project = self.project_repo.save(project)
        logger.info("Project %s deregistered", name)
        return project
