# tests/services/test_operation_tracker.py
import pytest

from orchestrate.database import models
from orchestrate.repositories.sqlalchemy.sqlalchemy_operation_repository import SqlalchemyOperationRepository
from orchestrate.services.exceptions import InvalidStateError, NotFoundError, ValidationError
from orchestrate.services.operation_tracker import OperationTracker


@pytest.fixture
def tracker(session_factory) -> OperationTracker:
    return OperationTracker(SqlalchemyOperationRepository(session_factory))


def test_begin_records_a_pending_operation(tracker):
    operation = tracker.begin("CreateTemplate")

    assert operation.status == models.Operation.PENDING
    assert operation.kind == "CreateTemplate"
    assert tracker.get(operation.request_id).request_id == operation.request_id


def test_request_ids_are_unique(tracker):
    ids = {tracker.begin("RegisterProject").request_id for _ in range(20)}
    assert len(ids) == 20


def test_success_path(tracker):
    request_id = tracker.begin("CreateImage").request_id

    tracker.transition(request_id, models.Operation.RUNNING)
    operation = tracker.transition(request_id, models.Operation.SUCCEEDED, "Image workstation created.")

    assert operation.is_terminal
    assert operation.finished_at is not None
    assert operation.to_dict()["detail"] == "Image workstation created."


def test_failure_carries_the_error_kind(tracker):
    request_id = tracker.begin("CreateImage").request_id
    tracker.transition(request_id, models.Operation.RUNNING)

    operation = tracker.transition(request_id, models.Operation.FAILED, "step 'teradici' failed", "StepFailedError")

    assert operation.to_dict()["error_kind"] == "StepFailedError"


def test_failure_without_kind_is_rejected(tracker):
    request_id = tracker.begin("CreateImage").request_id

    with pytest.raises(ValidationError):
        tracker.transition(request_id, models.Operation.FAILED, "boom")


def test_terminal_status_is_written_once(tracker):
    request_id = tracker.begin("DeleteTemplate").request_id
    tracker.transition(request_id, models.Operation.SUCCEEDED)

    with pytest.raises(InvalidStateError):
        tracker.transition(request_id, models.Operation.FAILED, "late", "ProviderError")
    assert tracker.get(request_id).status == models.Operation.SUCCEEDED


def test_cannot_move_back_to_pending(tracker):
    request_id = tracker.begin("DeleteTemplate").request_id
    tracker.transition(request_id, models.Operation.RUNNING)

    with pytest.raises(InvalidStateError):
        tracker.transition(request_id, models.Operation.PENDING)


def test_unknown_request_id(tracker):
    with pytest.raises(NotFoundError):
        tracker.get("0" * 32)
