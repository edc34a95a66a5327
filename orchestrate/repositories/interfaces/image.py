from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from orchestrate.database import models


class IImageRepository(ABC):
    @abstractmethod
    def create(self, image_model: models.Image) -> models.Image:
        """Stores a new image record."""
        pass

    @abstractmethod
    def find_by_name(self, project: str, name: str) -> Optional[models.Image]:
        """Looks up an image by name within a project."""
        pass

    @abstractmethod
    def list_by_project(self, project: str) -> List[models.Image]:
        pass

    @abstractmethod
    def count_by_project(self, project: str, statuses: Optional[Iterable[str]] = None) -> int:
        """Counts the images of a project, optionally only those in `statuses`."""
        pass

    @abstractmethod
    def save(self, image: models.Image) -> models.Image:
        """Persists changes made to an already stored image."""
        pass
