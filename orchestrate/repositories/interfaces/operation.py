from abc import ABC, abstractmethod
from typing import Optional

from orchestrate.database import models


class IOperationRepository(ABC):
    @abstractmethod
    def create(self, operation_model: models.Operation) -> models.Operation:
        pass

    @abstractmethod
    def find_by_request_id(self, request_id: str) -> Optional[models.Operation]:
        pass

    @abstractmethod
    def save(self, operation: models.Operation) -> models.Operation:
        pass
