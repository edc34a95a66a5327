# orchestrate/services/operation_tracker.py
import logging
import threading
import uuid
from datetime import datetime
from typing import Optional

from orchestrate.database import models
from orchestrate.repositories.interfaces import IOperationRepository
from orchestrate.services.exceptions import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_ALLOWED = {
    models.Operation.PENDING: {models.Operation.RUNNING, models.Operation.SUCCEEDED, models.Operation.FAILED},
    models.Operation.RUNNING: {models.Operation.SUCCEEDED, models.Operation.FAILED},
}


class OperationTracker:
    """Records each accepted request as an Operation and moves it through its states."""

    def __init__(self, operation_repo: IOperationRepository):
        self.operation_repo = operation_repo
        self._lock = threading.Lock()

    def begin(self, kind: str) -> models.Operation:
        """
        Creates a PENDING operation with a fresh request id.

        Args:
            kind: The request type, e.g. 'CreateTemplate'.

        Returns:
            The stored operation.
        """
        operation = models.Operation(
            request_id=uuid.uuid4().hex,
            kind=kind,
            status=models.Operation.PENDING,
            detail="",
        )
        with self._lock:
            created = self.operation_repo.create(operation)
        logger.info("Operation %s (%s) accepted", created.request_id, kind)
        return created

    def transition(self, request_id: str, status: str, detail: str = "",
                   error_kind: Optional[str] = None) -> models.Operation:
        """
        Moves an operation to a new status.

        PENDING -> RUNNING -> SUCCEEDED | FAILED. A terminal status is
        written exactly once; FAILED must name the error kind.

        Raises:
            NotFoundError: Unknown request id.
            InvalidStateError: The operation is already terminal, or the
                move goes backwards.
            ValidationError: FAILED without an error kind.
        """
        if status == models.Operation.FAILED and not error_kind:
            raise ValidationError("A failed operation must carry an error kind.")

        with self._lock:
            operation = self._find(request_id)
            if status not in _ALLOWED.get(operation.status, set()):
                raise InvalidStateError(
                    f"Operation '{request_id}' cannot move from {operation.status} to {status}."
                )
            operation.status = status
            operation.detail = detail
            operation.error_kind = error_kind
            if status in models.Operation.TERMINAL_STATUSES:
                operation.finished_at = datetime.now()
            operation = self.operation_repo.save(operation)

        log = logger.warning if status == models.Operation.FAILED else logger.info
        log("Operation %s -> %s%s", request_id, status, f" ({error_kind}: {detail})" if error_kind else "")
        return operation

    def get(self, request_id: str) -> models.Operation:
        with self._lock:
            return self._find(request_id)

    def _find(self, request_id: str) -> models.Operation:
        operation = self.operation_repo.find_by_request_id(request_id)
        if not operation:
            raise NotFoundError(f"Operation '{request_id}' not found.")
        return operation
