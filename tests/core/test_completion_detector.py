import pytest

from bioauth.core import detector
from bioauth.core import state_machine as sm
from bioauth.core.errors import OperationNotFound
from bioauth.provider.errors import ProviderError, ProviderUnavailable, ResultNotReady
from bioauth.provider.types import RemoteStatus
from bioauth.store.models import ENROLLMENT
from bioauth.store.operation_repo import load_operation
from conftest import COMPLETED_AT, DONE, GOOD_PROOF, LIVENESS_FAILED_PROOF, NOT_FOUND, REVIEW_PROOF, STILL_PENDING

VERIFIED = {"type": None, "pageName": "verifiedPage", "success": True, "status": None, "timestamp": None}


# ---------------------------------------------------------------------------
# completion predicate
# ---------------------------------------------------------------------------
def test_success_with_completed_at_is_completion():
    assert detector.is_completion(DONE) is True


def test_success_without_completed_at_is_not_completion():
    assert detector.is_completion(RemoteStatus(stateCode=1, resultCode=1, completedAt=None)) is False


def test_not_found_is_not_completion():
    assert detector.is_completion(NOT_FOUND) is False


def test_zero_valued_completed_at_counts_as_null():
    status = RemoteStatus.from_payload({"State": 1, "Result": 1, "CompletedAt": "0001-01-01T00:00:00"})
    assert status.reports_success is True
    assert status.completedAt is None
    assert detector.is_completion(status) is False


def test_string_codes_from_transactions_endpoint():
    status = RemoteStatus.from_payload(
        {"status": "Completed", "result": "Success", "completedAt": "2024-05-01T10:00:00.1234567Z"}
    )
    assert status.stateCode == 1
    assert status.resultCode == 1
    assert status.completedAt == COMPLETED_AT + 123
    assert detector.is_completion(status) is True


# ---------------------------------------------------------------------------
# event recognition
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"pageName": "verifiedPage", "success": True}, detector.EVENT_SUCCESS),
        ({"type": "success"}, detector.EVENT_SUCCESS),
        ({"status": "completed"}, detector.EVENT_SUCCESS),
        ({"pageName": "verifiedPage", "success": False}, detector.EVENT_FAILURE),
        ({"type": "failed"}, detector.EVENT_FAILURE),
        ({"type": "cancelled"}, detector.EVENT_CANCEL),
        ({"pageName": "documentPage"}, None),
        ({"pageName": "verifiedPage"}, None),
        ({}, None),
    ],
)
def test_recognize_event(payload, expected):
    assert detector.recognize_event(payload) == expected


# ---------------------------------------------------------------------------
# signals against the state machine
# ---------------------------------------------------------------------------
def test_success_without_completed_at_never_completes(register, machine, provider, issuer):
    register()
    op = detector.on_poll("op-1", RemoteStatus(stateCode=1, resultCode=1, completedAt=None), client=provider, machine=machine)
    assert op.state == sm.PENDING
    assert op.outcome is None
    assert op.completedAt is None
    provider.fetch_result.assert_not_called()
    issuer.assert_not_called()


def test_event_then_poll_transitions_once(register, machine, provider, issuer):
    register()
    op = detector.on_event("op-1", VERIFIED, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.signalSource == sm.SOURCE_EVENT
    provider.query_status.assert_called_once_with("op-1", True)

    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.signalSource == sm.SOURCE_EVENT
    assert issuer.call_count == 1
    assert provider.fetch_result.call_count == 1
    assert [t["to"] for t in op.transitions] == [sm.CREATED, sm.PENDING, sm.COMPLETED]


def test_poll_then_event_transitions_once(register, machine, provider, issuer):
    register()
    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.completedAt == COMPLETED_AT

    op = detector.on_event("op-1", VERIFIED, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.signalSource == sm.SOURCE_POLL
    assert issuer.call_count == 1
    assert provider.fetch_result.call_count == 1
    provider.query_status.assert_not_called()
    assert [t["to"] for t in load_operation("op-1").transitions] == [sm.CREATED, sm.PENDING, sm.COMPLETED]


def test_event_completed_at_comes_from_the_provider(register, machine, provider):
    register()
    op = detector.on_event("op-1", {**VERIFIED, "timestamp": 1234}, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.completedAt == COMPLETED_AT
    assert op.eventReceivedAt is not None


def test_event_while_provider_reports_failure(register, machine, provider, issuer):
    register()
    provider.query_status.return_value = RemoteStatus(stateCode=1, resultCode=2, completedAt=COMPLETED_AT)

    op = detector.on_event("op-1", {"type": "success"}, client=provider, machine=machine)

    assert op.state == sm.FAILED
    assert op.reasons == [sm.REMOTE_FAILURE]
    assert op.signalSource == sm.SOURCE_EVENT
    assert op.completedAt is None
    provider.fetch_result.assert_not_called()
    issuer.assert_not_called()


def test_event_during_success_without_completed_at(register, machine, provider, issuer):
    register()
    provider.query_status.return_value = RemoteStatus(stateCode=1, resultCode=1, completedAt=None)

    op = detector.on_event("op-1", VERIFIED, client=provider, machine=machine)

    assert op.state == sm.PENDING
    assert op.outcome is None
    assert op.completedAt is None
    assert op.eventReceivedAt is not None
    assert op.remoteState["resultCode"] == 1
    provider.fetch_result.assert_not_called()
    issuer.assert_not_called()


@pytest.mark.parametrize("answer", [NOT_FOUND, STILL_PENDING, ProviderUnavailable("down", 503)])
def test_event_without_remote_evidence_stays_pending(register, machine, provider, issuer, answer):
    register()
    if isinstance(answer, Exception):
        provider.query_status.side_effect = answer
    else:
        provider.query_status.return_value = answer

    op = detector.on_event("op-1", VERIFIED, client=provider, machine=machine)

    assert op.state == sm.PENDING
    assert op.outcome is None
    assert op.eventReceivedAt is not None
    issuer.assert_not_called()


def test_event_with_lagging_proof_is_confirmed_by_poll(register, machine, provider, issuer):
    register()
    provider.fetch_result.side_effect = [ResultNotReady("not yet"), GOOD_PROOF]

    op = detector.on_event("op-1", VERIFIED, client=provider, machine=machine)
    assert op.state == sm.PENDING
    issuer.assert_not_called()

    # no remote evidence on this tick: the remembered event alone settles nothing
    op = detector.on_poll("op-1", NOT_FOUND, client=provider, machine=machine)
    assert op.state == sm.PENDING
    assert provider.fetch_result.call_count == 1

    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)
    assert op.state == sm.COMPLETED
    assert op.completedAt == COMPLETED_AT
    assert op.signalSource == sm.SOURCE_POLL
    assert issuer.call_count == 1


def test_proof_fetch_error_is_absorbed(register, machine, provider, issuer):
    register()
    provider.fetch_result.side_effect = ProviderError("token response carried no AccessToken")

    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)

    assert op.state == sm.PENDING
    assert op.outcome is None
    issuer.assert_not_called()


def test_failure_and_unknown_events_are_ignored(register, machine, provider):
    register()
    for payload in ({"type": "failure"}, {"type": "cancel"}, {"pageName": "selfiePage"}):
        op = detector.on_event("op-1", payload, client=provider, machine=machine)
        assert op.state == sm.PENDING
        assert op.outcome is None
    provider.fetch_result.assert_not_called()
    provider.query_status.assert_not_called()


def test_not_found_surfaces_as_pending(register, machine, provider):
    register()
    op = detector.on_poll("op-1", NOT_FOUND, client=provider, machine=machine)
    assert op.state == sm.PENDING
    assert op.remoteState["queryable"] is False
    assert op.pollCount == 1


def test_remote_failure_fails_operation(register, machine, provider, issuer):
    register()
    op = detector.on_poll("op-1", RemoteStatus(stateCode=2, resultCode=0), client=provider, machine=machine)
    assert op.state == sm.FAILED
    assert op.reasons == [sm.REMOTE_FAILURE]
    issuer.assert_not_called()


def test_completed_with_failure_result_fails_operation(register, machine, provider):
    register()
    op = detector.on_poll("op-1", RemoteStatus(stateCode=1, resultCode=2, completedAt=COMPLETED_AT), client=provider, machine=machine)
    assert op.state == sm.FAILED


def test_remote_expiry_expires_operation(register, machine, provider):
    register()
    op = detector.on_poll("op-1", RemoteStatus(stateCode=3), client=provider, machine=machine)
    assert op.state == sm.EXPIRED
    assert op.outcome == sm.TIMED_OUT
    assert op.reasons == [sm.REMOTE_EXPIRED]


def test_liveness_failure_fails_with_reason(register, machine, provider, issuer):
    register()
    provider.fetch_result.return_value = LIVENESS_FAILED_PROOF
    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)
    assert op.state == sm.FAILED
    assert "LivenessFailed" in op.reasons
    issuer.assert_not_called()


def test_low_match_score_is_manual_review(register, machine, provider, issuer):
    register(kind=ENROLLMENT)
    provider.fetch_result.return_value = REVIEW_PROOF
    op = detector.on_poll("op-1", DONE, client=provider, machine=machine)
    assert op.state == sm.PENDING
    assert op.outcome == sm.MANUAL_REVIEW
    assert op.reasons == ["LowMatchScore"]
    assert op.is_settled() is True
    issuer.assert_not_called()


def test_unknown_operation(fake_redis, machine, provider):
    with pytest.raises(OperationNotFound):
        detector.on_event("missing", VERIFIED, client=provider, machine=machine)
