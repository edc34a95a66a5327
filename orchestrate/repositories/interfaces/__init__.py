from .image import IImageRepository
from .operation import IOperationRepository
from .project import IProjectRepository
from .template import ITemplateRepository

__all__ = ["IImageRepository", "IOperationRepository", "IProjectRepository", "ITemplateRepository"]
