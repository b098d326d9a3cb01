"""
Completion Detector
-------------------
Two independent signals, any order:
- event: the capture surface tells us the user reached the verified page
- poll:  periodic status queries against the provider

Only the provider's own status can satisfy the completion predicate. A
recognized success event is a prompt, not evidence: it triggers an immediate
status check, which settles the operation when the provider already agrees.
While the status endpoint lags, the event is remembered and polling confirms
it. Whichever check first satisfies the predicate settles the operation
through the state machine; every later one finds it settled and is discarded
there.

Completion predicate: result == success AND completedAt present. The provider
has been seen reporting success with a null completedAt while the operation
was still running; that reading is treated as pending.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

from bioauth.core import proof_validator as pv
from bioauth.core.errors import OperationNotFound
from bioauth.core.state_machine import (
    OperationStateMachine,
    SOURCE_EVENT,
    SOURCE_POLL,
    SOURCE_TIMEOUT,
    REMOTE_EXPIRED,
    get_state_machine,
)
from bioauth.observability import metrics
from bioauth.observability.logging import log
from bioauth.provider.client import OperationClient, get_operation_client
from bioauth.provider.errors import ProviderError, ProviderUnavailable, ResultNotReady
from bioauth.provider.types import RemoteStatus
from bioauth.settings import settings
from bioauth.store.models import Operation
from bioauth.store.operation_repo import load_operation, is_cancel_requested, clear_cancel
from bioauth.utils.lock import LockNotAcquired
from bioauth.utils.time import now_ms

EVENT_SUCCESS = "success"
EVENT_FAILURE = "failure"
EVENT_CANCEL = "cancel"

VERIFIED_PAGE = "verifiedPage"

_FAILURE_TYPES = ("failure", "failed", "error", "rejected")
_CANCEL_TYPES = ("cancel", "cancelled", "canceled", "closed")

# Attempts at the final EXPIRED write when another writer holds the lock
_EXPIRE_ATTEMPTS = 3


def is_completion(status: RemoteStatus) -> bool:
    return bool(status.queryable and status.reports_success and status.completedAt is not None)


def recognize_event(payload: Dict[str, Any]) -> Optional[str]:
    """
    Classify a normalized capture event. Returns EVENT_SUCCESS only for the
    shapes that mean "capture verified"; anything unrecognized is None.
    """
    if not isinstance(payload, dict):
        return None
    kind = str(payload.get("type") or "").strip().lower()
    page = str(payload.get("pageName") or "").strip()
    status = str(payload.get("status") or "").strip().lower()
    success = payload.get("success")

    if page == VERIFIED_PAGE and success is True:
        return EVENT_SUCCESS
    if kind == "success" or status == "completed":
        return EVENT_SUCCESS
    if kind in _CANCEL_TYPES:
        return EVENT_CANCEL
    if kind in _FAILURE_TYPES or success is False:
        return EVENT_FAILURE
    return None


def _load(operation_id: str) -> Operation:
    op = load_operation(operation_id)
    if op is None:
        raise OperationNotFound(operation_id)
    return op


def _settle_success(
    op: Operation,
    completed_at: int,
    source: str,
    client: OperationClient,
    machine: OperationStateMachine,
) -> Operation:
    """The provider confirmed completion; fetch and classify the proof. No proof yet means the next check retries."""
    try:
        proof = client.fetch_result(op.operationId, op.isTransaction)
    except ResultNotReady as e:
        log(event="proof_not_ready", operationId=op.operationId, source=source, error=str(e))
        return op
    except ProviderError as e:
        if isinstance(e, ProviderUnavailable):
            metrics.increment_provider_unavailable()
        log(event="proof_fetch_failed", operationId=op.operationId, source=source, error=str(e), retryable=e.retryable)
        return op

    verdict = pv.classify_proof(proof)
    log(
        event="proof_classified",
        operationId=op.operationId,
        decision=verdict.decision,
        errors=verdict.errors,
        warnings=verdict.warnings,
    )
    return machine.apply_verdict(op.operationId, proof, verdict, completed_at, source)


def _reconcile(
    op: Operation,
    status: RemoteStatus,
    source: str,
    client: OperationClient,
    machine: OperationStateMachine,
) -> Operation:
    """Act on one provider observation. Remote codes decide; nothing else moves state."""
    if not status.queryable:
        return op
    if is_completion(status):
        return _settle_success(op, status.completedAt, source, client, machine)
    if status.reports_failure:
        return machine.remote_failure(op.operationId, status, source=source)
    if status.reports_expired:
        return machine.expire(op.operationId, source=source, reason=REMOTE_EXPIRED)
    if status.reports_success:
        log(event="completion_anomaly", operationId=op.operationId, detail="success without completedAt", source=source, remote=status.summary())
    return op


def on_event(
    operation_id: str,
    payload: Dict[str, Any],
    *,
    client: Optional[OperationClient] = None,
    machine: Optional[OperationStateMachine] = None,
) -> Operation:
    client = client or get_operation_client()
    machine = machine or get_state_machine()
    op = _load(operation_id)

    recognized = recognize_event(payload)
    if recognized != EVENT_SUCCESS:
        # failure/cancel from the capture surface are advisory; polling decides
        metrics.increment_event(accepted=False)
        log(event="capture_event_ignored", operationId=operation_id, recognized=recognized, payloadKeys=sorted(payload or {}))
        return op

    if op.is_settled():
        metrics.increment_event(accepted=False)
        log(event="capture_event_after_settle", operationId=operation_id, state=op.state, outcome=op.outcome)
        return op

    metrics.increment_event(accepted=True)
    received_at = now_ms()
    log(event="capture_event_success", operationId=operation_id, receivedAt=received_at, clientTimestamp=(payload or {}).get("timestamp"))

    try:
        status = client.query_status(op.operationId, op.isTransaction)
    except ProviderError as e:
        log(event="event_confirmation_deferred", operationId=operation_id, error=str(e), retryable=e.retryable)
        return machine.record_event(operation_id, received_at)

    op = machine.record_event(operation_id, received_at, status)
    if op.is_settled():
        return op
    op = _reconcile(op, status, SOURCE_EVENT, client, machine)
    if not op.is_settled():
        log(event="event_confirmation_deferred", operationId=operation_id, remote=status.summary())
    return op


def on_poll(
    operation_id: str,
    status: RemoteStatus,
    *,
    client: Optional[OperationClient] = None,
    machine: Optional[OperationStateMachine] = None,
) -> Operation:
    client = client or get_operation_client()
    machine = machine or get_state_machine()

    op = machine.record_poll(operation_id, status)
    if op.is_settled():
        return op
    return _reconcile(op, status, SOURCE_POLL, client, machine)


def _expire_on_budget(operation_id: str, machine: OperationStateMachine, interval: float, sleep) -> Operation:
    for attempt in range(1, _EXPIRE_ATTEMPTS + 1):
        try:
            return machine.expire(operation_id, source=SOURCE_TIMEOUT)
        except LockNotAcquired as e:
            log(event="poll_expire_lock_busy", operationId=operation_id, attempt=attempt, error=str(e))
            op = _load(operation_id)
            if op.is_settled():
                return op
            if attempt < _EXPIRE_ATTEMPTS:
                sleep(interval)
    # still contended: hand back to the job runner
    raise LockNotAcquired(f"Could not expire operation {operation_id}")


def run_poll_loop(
    operation_id: str,
    *,
    client: Optional[OperationClient] = None,
    machine: Optional[OperationStateMachine] = None,
    interval_sec: Optional[float] = None,
    budget_sec: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Operation:
    """
    Bounded polling for one operation. Stops on settle, on cancel, on the
    attempt or wall-clock budget and on the operation's own expiresAt; the
    last three end in EXPIRED. No query is issued after any stop condition.

    Provider errors and lock contention are non-terminal ticks. The attempt
    budget counts the polls already recorded on the operation, so a restarted
    job does not get a fresh one.
    """
    client = client or get_operation_client()
    machine = machine or get_state_machine()
    interval = float(settings.POLL_INTERVAL_SEC if interval_sec is None else interval_sec)
    budget = float(settings.POLL_BUDGET_SEC if budget_sec is None else budget_sec)
    attempts = int(settings.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts)

    started = clock()
    polls = 0
    log(event="poll_loop_started", operationId=operation_id, intervalSec=interval, budgetSec=budget, maxAttempts=attempts)
    try:
        for attempt in range(1, attempts + 1):
            op = _load(operation_id)
            if op.is_settled():
                log(event="poll_loop_stopped", operationId=operation_id, reason="settled", polls=polls)
                return op
            if is_cancel_requested(operation_id):
                log(event="poll_loop_stopped", operationId=operation_id, reason="cancelled", polls=polls)
                return op
            if clock() - started >= budget or now_ms() >= op.expiresAt or op.pollCount >= attempts:
                break

            polls += 1
            metrics.increment_poll()
            try:
                status = client.query_status(operation_id, op.isTransaction)
                if not status.queryable:
                    metrics.increment_not_yet_queryable()
                op = on_poll(operation_id, status, client=client, machine=machine)
            except ProviderError as e:
                # absorbed: counts as a non-terminal tick
                if isinstance(e, ProviderUnavailable):
                    metrics.increment_provider_unavailable()
                log(event="poll_query_failed", operationId=operation_id, attempt=attempt, error=str(e), retryable=e.retryable)
            except LockNotAcquired as e:
                # the event handler holds the record; it settles or the next tick sees why not
                log(event="poll_tick_lock_busy", operationId=operation_id, attempt=attempt, error=str(e))
            else:
                if op.is_settled():
                    log(event="poll_loop_stopped", operationId=operation_id, reason="settled", polls=polls, state=op.state, outcome=op.outcome)
                    return op

            if attempt < attempts:
                sleep(interval)

        op = _expire_on_budget(operation_id, machine, interval, sleep)
        log(event="poll_loop_stopped", operationId=operation_id, reason="budget_exhausted", polls=polls, state=op.state)
        return op
    finally:
        clear_cancel(operation_id)
