import time
from typing import Any, Callable, Dict, Optional

from rq import Retry

from bioauth.core import state_machine as sm
from bioauth.core.detector import run_poll_loop
from bioauth.core.credentials import decode_token, issue_credential
from bioauth.core.errors import EnrollmentExists, InvalidToken, NotEnrolled, OperationNotFound
from bioauth.core.state_machine import get_state_machine
from bioauth.observability.logging import log
from bioauth.provider.client import get_operation_client
from bioauth.provider.errors import InvalidSubject
from bioauth.queue.jobs import poll_operation_job
from bioauth.queue.rq_conn import get_queue
from bioauth.settings import settings
from bioauth.store.models import AUTHENTICATION, ENROLLMENT, IssuedCredential, Operation
from bioauth.store.operation_repo import (
    load_enrollment,
    load_operation,
    request_cancel,
    take_credential,
)
from bioauth.utils.time import now_ms, to_iso

# Caller-facing status for each settled/unsettled shape
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"
STATUS_MANUAL_REVIEW = "manual_review"

_WAIT_STEP_SEC = 0.5


def _require_subject(user_id: Optional[str]) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise InvalidSubject("userId is required")
    return user_id


def _load(operation_id: str) -> Operation:
    op = load_operation(operation_id)
    if op is None:
        raise OperationNotFound(operation_id)
    return op


def _schedule_polling(operation_id: str, background_tasks=None) -> None:
    """
    POLL_MODE=rq: one RQ job per operation (the worker owns the loop).
    POLL_MODE=inline: FastAPI background task in the API process.
    """
    if settings.POLL_MODE == "inline" and background_tasks is not None:
        background_tasks.add_task(run_poll_loop, operation_id)
        log(event="polling_scheduled", operationId=operation_id, mode="inline")
        return
    q = get_queue()
    q.enqueue(
        poll_operation_job,
        operation_id,
        retry=Retry(max=2, interval=[5, 15]),
    )
    log(event="polling_scheduled", operationId=operation_id, mode="rq", queue=settings.RQ_QUEUE_NAME)


def _in_flight(op: Optional[Operation]) -> bool:
    return op is not None and not op.is_settled() and now_ms() < op.expiresAt


def _start(kind: str, user_id: str, profile: Dict[str, Any], background_tasks=None) -> Operation:
    machine = get_state_machine()
    created = get_operation_client().create_operation(kind, user_id, **profile)
    op = machine.register(created, kind, user_id)
    op = machine.mark_pending(op.operationId)
    _schedule_polling(op.operationId, background_tasks)
    return op


def start_enrollment(user_id: str, profile: Optional[Dict[str, Any]] = None, *, background_tasks=None) -> Operation:
    """
    Start (or resume) enrollment. A completed enrollment is never silently
    replaced; an in-flight one is returned as-is.
    """
    user_id = _require_subject(user_id)
    record = load_enrollment(user_id)
    if record is not None:
        if record.status == sm.COMPLETED:
            raise EnrollmentExists(user_id)
        current = load_operation(record.operationId)
        if _in_flight(current):
            log(event="enrollment_resumed", userId=user_id, operationId=current.operationId)
            return current

    op = _start(ENROLLMENT, user_id, profile or {}, background_tasks)
    log(event="enrollment_started", userId=user_id, operationId=op.operationId)
    return op


def reenroll(user_id: str, profile: Optional[Dict[str, Any]] = None, *, background_tasks=None) -> Operation:
    user_id = _require_subject(user_id)
    record = load_enrollment(user_id)
    if record is not None:
        current = load_operation(record.operationId)
        if _in_flight(current):
            request_cancel(current.operationId)
    get_state_machine().reset_enrollment(user_id)
    return start_enrollment(user_id, profile, background_tasks=background_tasks)


def start_authentication(user_id: str, *, background_tasks=None) -> Operation:
    user_id = _require_subject(user_id)
    record = load_enrollment(user_id)
    if record is None or record.status != sm.COMPLETED:
        raise NotEnrolled(user_id)
    op = _start(AUTHENTICATION, user_id, {}, background_tasks)
    log(event="authentication_started", userId=user_id, operationId=op.operationId)
    return op


def status_of(op: Operation) -> str:
    if op.state == sm.COMPLETED:
        return STATUS_COMPLETED
    if op.state == sm.FAILED:
        return STATUS_FAILED
    if op.state == sm.EXPIRED:
        return STATUS_EXPIRED
    if op.outcome == sm.MANUAL_REVIEW:
        return STATUS_MANUAL_REVIEW
    return STATUS_PENDING


def operation_view(op: Operation, *, collect_credential: bool = True) -> Dict[str, Any]:
    """Caller-facing view. Issued credentials are handed out once, on the first read after COMPLETED."""
    view = {
        "operationId": op.operationId,
        "kind": op.kind,
        "userId": op.userId,
        "state": op.state,
        "status": status_of(op),
        "outcome": op.outcome,
        "reasons": list(op.reasons or []),
        "completedAt": op.completedAt,
        "expiresAt": op.expiresAt,
        "expiresAtIso": to_iso(op.expiresAt),
        "captureUrl": None if op.is_settled() else op.captureUrl,
        "credential": None,
    }
    if collect_credential and op.state == sm.COMPLETED and op.kind == AUTHENTICATION:
        credential = take_credential(op.operationId)
        if credential is not None:
            view["credential"] = {
                "accessToken": credential.accessToken,
                "refreshToken": credential.refreshToken,
                "expiry": credential.expiry,
                "tokenType": credential.tokenType,
            }
    return view


def get_operation_view(operation_id: str) -> Dict[str, Any]:
    return operation_view(_load(operation_id))


def wait_for_completion(
    operation_id: str,
    *,
    deadline_sec: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    """
    Block until the operation settles or the deadline passes; the polling
    task does the work, this only re-reads the record.
    """
    deadline = float(settings.WAIT_DEADLINE_SEC if deadline_sec is None else deadline_sec)
    started = clock()
    op = _load(operation_id)
    while not op.is_settled() and clock() - started < deadline:
        sleep(_WAIT_STEP_SEC)
        op = _load(operation_id)
    if not op.is_settled():
        log(event="wait_deadline_reached", operationId=operation_id, deadlineSec=deadline)
    return operation_view(op)


def cancel_operation(operation_id: str) -> Dict[str, Any]:
    """Stop polling. The record keeps its state; a settled operation is returned unchanged."""
    op = _load(operation_id)
    if not op.is_settled():
        request_cancel(operation_id)
        log(event="operation_cancel_requested", operationId=operation_id, state=op.state)
    return operation_view(op, collect_credential=False)


def refresh_session(refresh_token: str) -> IssuedCredential:
    """Trade a valid refresh token for a fresh pair, as long as the subject is still enrolled."""
    claims = decode_token(refresh_token or "", verify_type="refresh")
    if claims is None:
        raise InvalidToken("invalid or expired refresh token")
    user_id = str(claims.get("sub") or "")
    record = load_enrollment(user_id) if user_id else None
    if record is None or record.status != sm.COMPLETED:
        raise InvalidToken("subject has no completed enrollment")
    log(event="session_refreshed", userId=user_id)
    return issue_credential(user_id)
