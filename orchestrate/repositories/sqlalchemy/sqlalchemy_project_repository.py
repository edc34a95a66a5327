from typing import List, Optional

from orchestrate.database import models
from orchestrate.repositories.interfaces import IProjectRepository
from orchestrate.repositories.sqlalchemy._base import SqlalchemyRepository


class SqlalchemyProjectRepository(SqlalchemyRepository, IProjectRepository):
    def create(self, project_model: models.Project) -> models.Project:
        return self._persist(project_model)

    def find_by_name(self, name: str) -> Optional[models.Project]:
        return self.db.query(models.Project).populate_existing().filter(models.Project.name == name).first()

    def list_all(self) -> List[models.Project]:
        return self.db.query(models.Project).order_by(models.Project.name.asc()).all()

    def save(self, project: models.Project) -> models.Project:
        return self._persist(project)
