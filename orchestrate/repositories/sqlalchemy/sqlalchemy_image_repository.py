from typing import Iterable, List, Optional

from orchestrate.database import models
from orchestrate.repositories.interfaces import IImageRepository
from orchestrate.repositories.sqlalchemy._base import SqlalchemyRepository


class SqlalchemyImageRepository(SqlalchemyRepository, IImageRepository):
    def create(self, image_model: models.Image) -> models.Image:
        return self._persist(image_model)

    def find_by_name(self, project: str, name: str) -> Optional[models.Image]:
        return self.db.query(models.Image).populate_existing().filter(
            models.Image.project == project,
            models.Image.name == name,
        ).first()

    def list_by_project(self, project: str) -> List[models.Image]:
        return self.db.query(models.Image).filter(models.Image.project == project).order_by(models.Image.name.asc()).all()

    def count_by_project(self, project: str, statuses: Optional[Iterable[str]] = None) -> int:
        query = self.db.query(models.Image).filter(models.Image.project == project)
        if statuses is not None:
            query = query.filter(models.Image.status.in_(list(statuses)))
        return query.count()

    def save(self, image: models.Image) -> models.Image:
        return self._persist(image)
