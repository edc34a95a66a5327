from typing import List, Optional

from sqlalchemy.orm import selectinload

from orchestrate.database import models
from orchestrate.repositories.interfaces import ITemplateRepository
from orchestrate.repositories.sqlalchemy._base import SqlalchemyRepository


class SqlalchemyTemplateRepository(SqlalchemyRepository, ITemplateRepository):
    def _query(self):
        return self.db.query(models.Template).populate_existing().options(selectinload(models.Template.sizes))

    def create(self, template_model: models.Template) -> models.Template:
        return self._persist(template_model)

    def find(self, project: str, zone: str, name: str) -> Optional[models.Template]:
        return self._query().filter(
            models.Template.project == project,
            models.Template.zone == zone,
            models.Template.name == name,
        ).first()

    def list_by_name(self, project: str, name: str) -> List[models.Template]:
        return self._query().filter(
            models.Template.project == project,
            models.Template.name == name,
        ).order_by(models.Template.zone.asc()).all()

    def list_by_project(self, project: str) -> List[models.Template]:
        return self._query().filter(models.Template.project == project).order_by(models.Template.name.asc()).all()

    def count_by_project(self, project: str) -> int:
        return self.db.query(models.Template).filter(models.Template.project == project).count()

    def save(self, template: models.Template) -> models.Template:
        return self._persist(template)

    def delete(self, template: models.Template) -> bool:
        return self._remove(template)
