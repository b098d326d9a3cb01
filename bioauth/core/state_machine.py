"""
Operation State Machine
-----------------------
Sole writer of Operation and EnrollmentRecord. The detector and the proof
validator only propose; every change goes through _write(), which holds the
per-operation lock, re-reads the record and discards anything that would
move a settled operation.

INVARIANTS:
- state only moves forward: CREATED -> PENDING -> {COMPLETED, FAILED, EXPIRED}
- COMPLETED requires a non-null completedAt carried by the terminal signal
- the credential issuer runs at most once per operation
"""
from __future__ import annotations

from typing import Callable, List, Optional

from bioauth.core import proof_validator as pv
from bioauth.core.credentials import issue_credential
from bioauth.core.errors import OperationNotFound, InvalidTransition
from bioauth.observability import metrics
from bioauth.observability.logging import log
from bioauth.provider.types import CreatedOperation, RemoteStatus
from bioauth.store.models import (
    AUTHENTICATION,
    ENROLLMENT,
    EnrollmentRecord,
    IssuedCredential,
    Operation,
    ProofResult,
)
from bioauth.store.operation_repo import (
    delete_enrollment,
    load_enrollment,
    load_operation,
    save_enrollment,
    save_operation,
    store_credential,
)
from bioauth.utils.lock import operation_lock
from bioauth.utils.time import now_ms

# Operation created at the provider, capture URL not handed out yet
CREATED = "CREATED"

# Capture in progress; also the resting state of a manual-review outcome
PENDING = "PENDING"

# Terminal: verified success (completedAt set, proof accepted)
COMPLETED = "COMPLETED"

# Terminal: proof rejected or provider reported failure
FAILED = "FAILED"

# Terminal: no terminal signal within the budget or the provider expired it
EXPIRED = "EXPIRED"

_RANK = {CREATED: 0, PENDING: 1, COMPLETED: 2, FAILED: 2, EXPIRED: 2}

# Settled outcomes
ACCEPTED = "accepted"
REJECTED = "rejected"
MANUAL_REVIEW = "manual_review"
TIMED_OUT = "expired"

# Signal sources
SOURCE_EVENT = "event"
SOURCE_POLL = "poll"
SOURCE_TIMEOUT = "timeout"
SOURCE_REVIEW = "review"

REMOTE_FAILURE = "RemoteFailure"
REMOTE_EXPIRED = "RemoteExpired"
BUDGET_EXHAUSTED = "PollBudgetExhausted"
MANUAL_REVIEW_REJECTED = "ManualReviewRejected"


class OperationStateMachine:
    def __init__(self, issuer: Callable[[str], IssuedCredential] = issue_credential):
        self._issuer = issuer

    # ------------------------------------------------------------------
    # write path
    # ------------------------------------------------------------------
    def _write(self, operation_id: str, mutate: Callable[[Operation], bool]) -> Operation:
        """
        Run mutate(op) under the operation lock against a fresh read.
        mutate returns True when it changed the record.
        """
        with operation_lock(operation_id):
            op = load_operation(operation_id)
            if op is None:
                raise OperationNotFound(operation_id)
            if mutate(op):
                save_operation(op)
                self._mirror_enrollment(op)
            return op

    @staticmethod
    def _move(op: Operation, to: str, source: str) -> bool:
        if _RANK[to] < _RANK[op.state] or op.state == to or op.is_terminal():
            return False
        op.transitions.append({"from": op.state, "to": to, "at": now_ms(), "source": source})
        log(event="operation_transition", operationId=op.operationId, kind=op.kind, fromState=op.state, toState=to, source=source)
        op.state = to
        return True

    @staticmethod
    def _mirror_enrollment(op: Operation) -> None:
        if op.kind != ENROLLMENT:
            return
        record = load_enrollment(op.userId)
        # a newer enrollment owns the record; leave it alone
        if record is not None and record.operationId != op.operationId:
            return
        if record is not None and record.status == op.state:
            return
        record = record or EnrollmentRecord(userId=op.userId, operationId=op.operationId)
        record.status = op.state
        save_enrollment(record)

    def _issue_once(self, op: Operation) -> None:
        if op.kind != AUTHENTICATION or op.credentialIssued:
            return
        credential = self._issuer(op.userId)
        store_credential(op.operationId, credential)
        op.credentialIssued = True

    @staticmethod
    def _discard(op: Operation, what: str) -> bool:
        log(event="transition_discarded", operationId=op.operationId, state=op.state, outcome=op.outcome, proposed=what)
        return False

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def register(self, created: CreatedOperation, kind: str, user_id: str) -> Operation:
        """Persist a freshly created provider operation. Re-registering the same id is a no-op."""
        with operation_lock(created.operationId):
            existing = load_operation(created.operationId)
            if existing is not None:
                return existing
            now = now_ms()
            op = Operation(
                operationId=created.operationId,
                kind=kind,
                userId=user_id,
                isTransaction=created.isTransaction,
                createdAt=now,
                expiresAt=created.expiresAt,
                captureUrl=created.captureUrl,
                transitions=[{"from": None, "to": CREATED, "at": now, "source": "create"}],
            )
            save_operation(op)
            if kind == ENROLLMENT:
                save_enrollment(EnrollmentRecord(userId=user_id, operationId=op.operationId, status=CREATED))
        metrics.increment_created()
        log(event="operation_registered", operationId=op.operationId, kind=kind, userId=user_id, expiresAt=op.expiresAt)
        return op

    def mark_pending(self, operation_id: str, source: str = "create") -> Operation:
        return self._write(operation_id, lambda op: self._move(op, PENDING, source))

    def record_poll(self, operation_id: str, status: RemoteStatus) -> Operation:
        """Poll bookkeeping. The remote codes are advisory and never move state on their own."""
        def mutate(op: Operation) -> bool:
            if op.is_settled():
                return False
            op.pollCount += 1
            op.lastPolledAt = now_ms()
            op.remoteState = status.summary()
            return True

        return self._write(operation_id, mutate)

    def record_event(self, operation_id: str, received_at: int, status: Optional[RemoteStatus] = None) -> Operation:
        """
        Note a recognized success event and the status check it triggered.
        The event itself is a client assertion: it never moves state.
        """
        def mutate(op: Operation) -> bool:
            if op.is_settled():
                return False
            if op.eventReceivedAt is None:
                op.eventReceivedAt = int(received_at)
            if status is not None:
                op.remoteState = status.summary()
            return True

        return self._write(operation_id, mutate)

    def apply_verdict(
        self,
        operation_id: str,
        proof: Optional[ProofResult],
        verdict: pv.Verdict,
        completed_at: Optional[int],
        source: str,
    ) -> Operation:
        settled: List[str] = []

        def mutate(op: Operation) -> bool:
            if op.is_settled():
                return self._discard(op, verdict.decision)
            if completed_at is None:
                # success reported without a completion timestamp: still pending
                log(event="completion_refused_no_completed_at", operationId=op.operationId, source=source)
                return False

            if op.proof is None and proof is not None:
                op.proof = proof.to_dict()
            op.completedAt = int(completed_at)
            op.signalSource = source

            if verdict.accepted:
                self._issue_once(op)
                op.outcome = ACCEPTED
                op.reasons = []
                self._move(op, COMPLETED, source)
            elif verdict.decision == pv.REJECT:
                op.outcome = REJECTED
                op.reasons = list(verdict.errors)
                self._move(op, FAILED, source)
            else:
                op.outcome = MANUAL_REVIEW
                op.reasons = list(verdict.warnings)
                self._move(op, PENDING, source)
            settled.append(op.state if op.is_terminal() else op.outcome)
            log(event="operation_settled", operationId=op.operationId, state=op.state, outcome=op.outcome, reasons=op.reasons, source=source)
            return True

        op = self._write(operation_id, mutate)
        if settled:
            metrics.record_settled(settled[0], latency_ms=now_ms() - op.createdAt)
        return op

    def remote_failure(self, operation_id: str, status: RemoteStatus, source: str = SOURCE_POLL) -> Operation:
        settled: List[str] = []

        def mutate(op: Operation) -> bool:
            if op.is_settled():
                return self._discard(op, FAILED)
            op.remoteState = status.summary()
            op.outcome = REJECTED
            op.reasons = [REMOTE_FAILURE]
            op.signalSource = source
            self._move(op, FAILED, source)
            settled.append(FAILED)
            return True

        op = self._write(operation_id, mutate)
        if settled:
            metrics.record_settled(FAILED)
        return op

    def expire(self, operation_id: str, source: str = SOURCE_TIMEOUT, reason: str = BUDGET_EXHAUSTED) -> Operation:
        settled: List[str] = []

        def mutate(op: Operation) -> bool:
            if op.is_settled():
                return self._discard(op, EXPIRED)
            op.outcome = TIMED_OUT
            op.reasons = [reason]
            op.signalSource = source
            self._move(op, EXPIRED, source)
            settled.append(EXPIRED)
            return True

        op = self._write(operation_id, mutate)
        if settled:
            metrics.record_settled(EXPIRED)
        return op

    def resolve_review(self, operation_id: str, decision: str, reviewer: str = "") -> Operation:
        """
        Settle a manual-review operation. accept -> COMPLETED (credential for
        authentication), reject -> FAILED with ManualReviewRejected.
        Resolving an already-resolved operation returns it unchanged.
        """
        if decision not in (pv.ACCEPT, pv.REJECT):
            raise InvalidTransition(f"unknown review decision: {decision!r}")
        settled: List[str] = []

        def mutate(op: Operation) -> bool:
            if op.is_terminal():
                return self._discard(op, f"review:{decision}")
            if op.outcome != MANUAL_REVIEW:
                raise InvalidTransition(f"operation {op.operationId} is not awaiting manual review")
            op.signalSource = SOURCE_REVIEW
            if decision == pv.ACCEPT:
                self._issue_once(op)
                op.outcome = ACCEPTED
                op.reasons = []
                self._move(op, COMPLETED, SOURCE_REVIEW)
            else:
                op.outcome = REJECTED
                op.reasons = [MANUAL_REVIEW_REJECTED]
                self._move(op, FAILED, SOURCE_REVIEW)
            op.transitions[-1]["reviewer"] = reviewer
            settled.append(op.state)
            log(event="manual_review_resolved", operationId=op.operationId, decision=decision, reviewer=reviewer)
            return True

        op = self._write(operation_id, mutate)
        if settled:
            metrics.record_settled(settled[0], latency_ms=now_ms() - op.createdAt)
        return op

    def reset_enrollment(self, user_id: str) -> None:
        """Drop the user's enrollment record ahead of a re-enrollment."""
        record = load_enrollment(user_id)
        if record is None:
            return
        delete_enrollment(user_id)
        log(event="enrollment_reset", userId=user_id, operationId=record.operationId, status=record.status)


_machine: Optional[OperationStateMachine] = None


def get_state_machine() -> OperationStateMachine:
    global _machine
    if _machine is None:
        _machine = OperationStateMachine()
    return _machine
