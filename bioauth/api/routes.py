from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from bioauth.api.auth import require_api_key, require_session
from bioauth.api.normalize import normalize_capture_event
from bioauth.api.schemas import (
    AuthenticationRequest,
    CaptureEvent,
    Credential,
    EnrollmentRequest,
    EnrollmentStatus,
    OperationView,
    RefreshRequest,
    SessionView,
)
from bioauth.core import detector
from bioauth.core import orchestrator
from bioauth.core import state_machine as sm
from bioauth.store.operation_repo import load_enrollment

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

# /complete answers 202 while the caller still has something to wait for
_WAIT_ACCEPTED = (orchestrator.STATUS_PENDING, orchestrator.STATUS_MANUAL_REVIEW)


@router.post("/enrollment", response_model=OperationView, status_code=201)
async def start_enrollment(req: EnrollmentRequest, background_tasks: BackgroundTasks):
    op = await run_in_threadpool(
        orchestrator.start_enrollment, req.userId, req.profile(), background_tasks=background_tasks
    )
    return orchestrator.operation_view(op, collect_credential=False)


@router.post("/enrollment/re-enroll", response_model=OperationView, status_code=201)
async def re_enroll(req: EnrollmentRequest, background_tasks: BackgroundTasks):
    op = await run_in_threadpool(
        orchestrator.reenroll, req.userId, req.profile(), background_tasks=background_tasks
    )
    return orchestrator.operation_view(op, collect_credential=False)


@router.get("/enrollment/{user_id}", response_model=EnrollmentStatus)
def get_enrollment(user_id: str):
    """Read-only view of the record the state machine maintains."""
    record = load_enrollment(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No enrollment for this user")
    return EnrollmentStatus(
        userId=record.userId,
        operationId=record.operationId,
        status=record.status,
        enrolled=record.status == sm.COMPLETED,
        updatedAt=record.updatedAt,
    )


@router.post("/authentication", response_model=OperationView, status_code=201)
async def start_authentication(req: AuthenticationRequest, background_tasks: BackgroundTasks):
    op = await run_in_threadpool(
        orchestrator.start_authentication, req.userId, background_tasks=background_tasks
    )
    return orchestrator.operation_view(op, collect_credential=False)


@router.get("/operations/{operation_id}", response_model=OperationView)
async def get_operation(operation_id: str):
    return await run_in_threadpool(orchestrator.get_operation_view, operation_id)


@router.post("/operations/{operation_id}/events", response_model=OperationView)
async def capture_event(operation_id: str, request: Request, payload: Any = Body(None)):
    """Event signal from the capture page. Accepts any shape; unrecognized ones are ignored."""
    if payload is None:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}

    event = CaptureEvent.model_validate(normalize_capture_event(payload))
    op = await run_in_threadpool(detector.on_event, operation_id, event.model_dump())
    # tokens are for the owning client, never for the capture page
    return orchestrator.operation_view(op, collect_credential=False)


@router.post("/operations/{operation_id}/complete", response_model=OperationView)
async def complete_operation(operation_id: str):
    view = await run_in_threadpool(orchestrator.wait_for_completion, operation_id)
    if view["status"] in _WAIT_ACCEPTED:
        return JSONResponse(status_code=202, content=OperationView(**view).model_dump())
    return view


@router.post("/operations/{operation_id}/cancel", response_model=OperationView)
async def cancel_operation(operation_id: str):
    return await run_in_threadpool(orchestrator.cancel_operation, operation_id)


@router.post("/token/refresh", response_model=Credential)
async def refresh_token(req: RefreshRequest):
    credential = await run_in_threadpool(orchestrator.refresh_session, req.refreshToken)
    return Credential(**asdict(credential))


@router.get("/session", response_model=SessionView)
def get_session(claims: Dict[str, Any] = Depends(require_session)):
    return SessionView(userId=claims["sub"], expiresAt=int(claims["exp"]), tokenId=claims.get("jti"))
