from typing import Optional

from orchestrate.database import models
from orchestrate.repositories.interfaces import IOperationRepository
from orchestrate.repositories.sqlalchemy._base import SqlalchemyRepository


class SqlalchemyOperationRepository(SqlalchemyRepository, IOperationRepository):
    def create(self, operation_model: models.Operation) -> models.Operation:
        return self._persist(operation_model)

    def find_by_request_id(self, request_id: str) -> Optional[models.Operation]:
        return self.db.query(models.Operation).populate_existing().filter(models.Operation.request_id == request_id).first()

    def save(self, operation: models.Operation) -> models.Operation:
        return self._persist(operation)
