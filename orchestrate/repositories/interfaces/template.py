from abc import ABC, abstractmethod
from typing import List, Optional

from orchestrate.database import models


class ITemplateRepository(ABC):
    @abstractmethod
    def create(self, template_model: models.Template) -> models.Template:
        """Stores a new template together with its sizes."""
        pass

    @abstractmethod
    def find(self, project: str, zone: str, name: str) -> Optional[models.Template]:
        """Looks up a template by its (project, zone, name) key."""
        pass

    @abstractmethod
    def list_by_name(self, project: str, name: str) -> List[models.Template]:
        """
        Lists the templates named `name` in any zone of the project.

        Provider instance-templates are project-global, so this is the lookup
        used for collision checks and for requests that carry no zone.
        """
        pass

    @abstractmethod
    def list_by_project(self, project: str) -> List[models.Template]:
        pass

    @abstractmethod
    def count_by_project(self, project: str) -> int:
        pass

    @abstractmethod
    def save(self, template: models.Template) -> models.Template:
        """Persists changes made to a template or to its size collection."""
        pass

    @abstractmethod
    def delete(self, template: models.Template) -> bool:
        """Deletes a template record and its size rows."""
        pass
