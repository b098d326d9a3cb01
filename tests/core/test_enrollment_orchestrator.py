import pytest
from unittest.mock import MagicMock, patch

from bioauth.core import orchestrator
from bioauth.core import proof_validator as pv
from bioauth.core import state_machine as sm
from bioauth.core.detector import run_poll_loop
from bioauth.core.errors import EnrollmentExists, NotEnrolled, OperationNotFound
from bioauth.provider.errors import InvalidSubject
from bioauth.provider.types import CreatedOperation
from bioauth.queue.jobs import poll_operation_job
from bioauth.settings import settings
from bioauth.store.models import AUTHENTICATION, ENROLLMENT
from bioauth.store.operation_repo import is_cancel_requested, load_enrollment
from bioauth.utils.time import now_ms
from conftest import COMPLETED_AT, GOOD_PROOF, REVIEW_PROOF


@pytest.fixture
def wired(machine):
    """Orchestrator with a scripted provider and no real polling."""
    counter = {"n": 0}

    def create(kind, subject_ref, **profile):
        counter["n"] += 1
        return CreatedOperation(
            operationId=f"{kind}-{counter['n']}",
            secret="one-time",
            expiresAt=now_ms() + 60_000,
            isTransaction=kind == AUTHENTICATION,
            captureUrl="http://capture.local/?x=1",
        )

    client = MagicMock()
    client.create_operation.side_effect = create
    with patch("bioauth.core.orchestrator.get_operation_client", return_value=client), \
         patch("bioauth.core.orchestrator.get_state_machine", return_value=machine), \
         patch("bioauth.core.orchestrator._schedule_polling") as schedule:
        yield client, schedule


def _enroll_completed(machine, user_id="user-1"):
    op = orchestrator.start_enrollment(user_id)
    machine.apply_verdict(op.operationId, GOOD_PROOF, pv.classify_proof(GOOD_PROOF), COMPLETED_AT, sm.SOURCE_POLL)
    return op


def test_start_enrollment_registers_and_schedules(wired):
    client, schedule = wired
    op = orchestrator.start_enrollment("user-1", {"displayName": "Ada"})

    assert op.state == sm.PENDING
    client.create_operation.assert_called_once_with(ENROLLMENT, "user-1", displayName="Ada")
    schedule.assert_called_once_with(op.operationId, None)
    assert load_enrollment("user-1").operationId == op.operationId


def test_in_flight_enrollment_is_resumed(wired):
    client, _ = wired
    first = orchestrator.start_enrollment("user-1")
    second = orchestrator.start_enrollment("user-1")
    assert second.operationId == first.operationId
    assert client.create_operation.call_count == 1


def test_completed_enrollment_is_not_replaced(wired, machine):
    _enroll_completed(machine)
    with pytest.raises(EnrollmentExists):
        orchestrator.start_enrollment("user-1")


def test_reenroll_replaces_completed_enrollment(wired, machine):
    first = _enroll_completed(machine)
    op = orchestrator.reenroll("user-1")
    assert op.operationId != first.operationId
    assert load_enrollment("user-1").operationId == op.operationId
    assert load_enrollment("user-1").status == sm.PENDING


def test_reenroll_cancels_in_flight_polling(wired):
    first = orchestrator.start_enrollment("user-1")
    orchestrator.reenroll("user-1")
    assert is_cancel_requested(first.operationId) is True


def test_blank_user_is_invalid(wired):
    with pytest.raises(InvalidSubject):
        orchestrator.start_enrollment("  ")


def test_authentication_requires_completed_enrollment(wired, machine):
    with pytest.raises(NotEnrolled):
        orchestrator.start_authentication("user-1")

    orchestrator.start_enrollment("user-1")
    with pytest.raises(NotEnrolled):
        orchestrator.start_authentication("user-1")


def test_authentication_after_enrollment(wired, machine):
    _enroll_completed(machine)
    op = orchestrator.start_authentication("user-1")
    assert op.kind == AUTHENTICATION
    assert op.isTransaction is True
    assert op.state == sm.PENDING


def test_view_hands_out_credential_once(wired, machine):
    _enroll_completed(machine)
    op = orchestrator.start_authentication("user-1")
    machine.apply_verdict(op.operationId, GOOD_PROOF, pv.classify_proof(GOOD_PROOF), COMPLETED_AT, sm.SOURCE_EVENT)

    view = orchestrator.get_operation_view(op.operationId)
    assert view["status"] == orchestrator.STATUS_COMPLETED
    assert view["credential"]["accessToken"] == "acc-token"
    assert view["captureUrl"] is None

    assert orchestrator.get_operation_view(op.operationId)["credential"] is None


def test_view_distinguishes_manual_review(wired, machine):
    op = orchestrator.start_enrollment("user-1")
    machine.apply_verdict(op.operationId, REVIEW_PROOF, pv.classify_proof(REVIEW_PROOF), COMPLETED_AT, sm.SOURCE_POLL)

    view = orchestrator.get_operation_view(op.operationId)
    assert view["state"] == sm.PENDING
    assert view["status"] == orchestrator.STATUS_MANUAL_REVIEW
    assert view["reasons"] == ["LowMatchScore"]


def test_wait_returns_once_settled(wired, machine):
    op = orchestrator.start_enrollment("user-1")

    def settle_on_sleep(_):
        machine.expire(op.operationId)

    sleep = MagicMock(side_effect=settle_on_sleep)
    view = orchestrator.wait_for_completion(op.operationId, deadline_sec=30, sleep=sleep, clock=lambda: 0.0)

    assert view["status"] == orchestrator.STATUS_EXPIRED
    assert sleep.call_count == 1


def test_wait_gives_up_at_deadline(wired):
    op = orchestrator.start_enrollment("user-1")
    ticks = iter([0.0, 0.0, 1.0, 2.5])
    sleep = MagicMock()

    view = orchestrator.wait_for_completion(op.operationId, deadline_sec=2, sleep=sleep, clock=lambda: next(ticks))

    assert view["status"] == orchestrator.STATUS_PENDING
    assert sleep.call_count == 2


def test_cancel_sets_flag(wired):
    op = orchestrator.start_enrollment("user-1")
    view = orchestrator.cancel_operation(op.operationId)
    assert view["status"] == orchestrator.STATUS_PENDING
    assert is_cancel_requested(op.operationId) is True


def test_unknown_operation(wired):
    with pytest.raises(OperationNotFound):
        orchestrator.get_operation_view("missing")


def test_rq_mode_enqueues_poll_job():
    q = MagicMock()
    with patch.object(settings, "POLL_MODE", "rq"), \
         patch("bioauth.core.orchestrator.get_queue", return_value=q):
        orchestrator._schedule_polling("op-1", background_tasks=MagicMock())
    assert q.enqueue.call_args.args == (poll_operation_job, "op-1")


def test_inline_mode_uses_background_task():
    background = MagicMock()
    with patch.object(settings, "POLL_MODE", "inline"), \
         patch("bioauth.core.orchestrator.get_queue") as get_queue:
        orchestrator._schedule_polling("op-1", background_tasks=background)
    background.add_task.assert_called_once_with(run_poll_loop, "op-1")
    get_queue.assert_not_called()
