from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

Status = Literal["pending", "completed", "failed", "expired", "manual_review"]

class EnrollmentRequest(BaseModel):
    userId: str
    displayName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def profile(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"userId"}, exclude_none=True)

class AuthenticationRequest(BaseModel):
    userId: str

class CaptureEvent(BaseModel):
    # Canonical shape after normalize_capture_event
    type: Optional[str] = None
    pageName: Optional[str] = None
    success: Optional[bool] = None
    status: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None

class Credential(BaseModel):
    accessToken: str
    refreshToken: str
    expiry: int
    tokenType: str = "Bearer"

class OperationView(BaseModel):
    operationId: str
    kind: str
    userId: str
    state: str
    status: Status
    outcome: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)
    completedAt: Optional[int] = None
    expiresAt: int
    expiresAtIso: Optional[str] = None
    captureUrl: Optional[str] = None
    credential: Optional[Credential] = None

class EnrollmentStatus(BaseModel):
    userId: str
    operationId: str
    status: str
    enrolled: bool
    updatedAt: int

class RefreshRequest(BaseModel):
    refreshToken: str

class SessionView(BaseModel):
    userId: str
    expiresAt: int
    tokenId: Optional[str] = None

class ReviewDecision(BaseModel):
    decision: Literal["accept", "reject"]
    reviewer: str = ""

class ErrorResponse(BaseModel):
    error: str
    code: str
    retryable: bool = False
