from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from bioauth.api.auth import require_admin
from bioauth.api.schemas import OperationView, ReviewDecision
from bioauth.core.errors import OperationNotFound
from bioauth.core.orchestrator import operation_view, status_of
from bioauth.core.state_machine import get_state_machine
from bioauth.store.operation_repo import load_operation
import bioauth.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"])


def _load(operation_id: str):
    op = load_operation(operation_id)
    if op is None:
        raise OperationNotFound(operation_id)
    return op


@router.get("/operations/{operation_id}")
def get_operation_snapshot(operation_id: str, _=Depends(require_admin)):
    """Full record for support; never hands out credentials."""
    op = _load(operation_id)
    return {
        "operationId": op.operationId,
        "kind": op.kind,
        "userId": op.userId,
        "state": op.state,
        "status": status_of(op),
        "outcome": op.outcome,
        "reasons": op.reasons,
        "createdAt": op.createdAt,
        "expiresAt": op.expiresAt,
        "completedAt": op.completedAt,
        "signalSource": op.signalSource,
        "eventReceivedAt": op.eventReceivedAt,
        "remoteState": op.remoteState,
        "proof": op.proof,
        "pollCount": op.pollCount,
        "lastPolledAt": op.lastPolledAt,
        "credentialIssued": op.credentialIssued,
    }


@router.get("/operations/{operation_id}/timeline")
def get_operation_timeline(operation_id: str, _=Depends(require_admin)):
    """Ordered transition history."""
    op = _load(operation_id)
    return sorted(op.transitions or [], key=lambda t: int(t.get("at", 0) or 0))


@router.post("/operations/{operation_id}/review", response_model=OperationView)
async def resolve_review(operation_id: str, body: ReviewDecision, _=Depends(require_admin)):
    op = await run_in_threadpool(
        get_state_machine().resolve_review, operation_id, body.decision, body.reviewer
    )
    return operation_view(op, collect_credential=False)


@router.get("/metrics")
def get_metrics(_=Depends(require_admin)):
    """
    Observability snapshot backed by Redis counters.
    """
    return metrics.get_metrics_snapshot()
