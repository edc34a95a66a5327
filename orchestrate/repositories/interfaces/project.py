from abc import ABC, abstractmethod
from typing import List, Optional

from orchestrate.database import models


class IProjectRepository(ABC):
    @abstractmethod
    def create(self, project_model: models.Project) -> models.Project:
        """Stores a new project record."""
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Project]:
        """Looks up a project by its cloud project id."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.Project]:
        pass

    @abstractmethod
    def save(self, project: models.Project) -> models.Project:
        """Persists changes made to an already stored project."""
        pass
