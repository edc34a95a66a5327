from .image import Image
from .operation import Operation
from .project import Project
from .template import Size, Template

__all__ = ["Image", "Operation", "Project", "Size", "Template"]
