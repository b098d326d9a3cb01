from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

ENROLLMENT = "enrollment"
AUTHENTICATION = "authentication"
KINDS = (ENROLLMENT, AUTHENTICATION)

TERMINAL_STATES = ("COMPLETED", "FAILED", "EXPIRED")


def _flag(value) -> str:
    return str(value or "").strip().lower().replace("_", " ")


def _score(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ProofResult:
    """
    Proof payload recorded against an operation once it reaches a terminal
    remote state. Tri-state booleans: None means the provider did not report
    the check at all, which is not the same as a failed check.
    """
    livenessPassed: Optional[bool] = None
    selfieInjection: bool = False
    documentInjection: bool = False
    presentationAttack: bool = False
    padManualReview: bool = False
    documentExpired: bool = False
    barcodeCheckFailed: bool = False
    mrzOcrMismatch: bool = False
    matchScore: Optional[float] = None
    confidenceScore: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def injectionDetected(self) -> bool:
        return self.selfieInjection or self.documentInjection

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ProofResult":
        """Map the provider's result document onto the fields this layer interprets."""
        p = payload or {}
        is_live = p.get("IsLive")
        pad = _flag(p.get("PadResult"))
        return cls(
            livenessPassed=None if is_live is None else bool(is_live),
            selfieInjection=_flag(p.get("SelfieInjectionDetection")) in ("fail", "reject"),
            documentInjection=_flag(p.get("DocumentInjectionDetection")) in ("fail", "reject"),
            presentationAttack=pad == "reject",
            padManualReview=pad in ("manual review", "manualreview"),
            documentExpired=p.get("DocumentExpired") is True,
            barcodeCheckFailed=_flag(p.get("BarcodeSecurityCheck")) == "fail",
            mrzOcrMismatch=_flag(p.get("MRZOCRMismatch")) == "fail",
            matchScore=_score(p.get("FaceMatchScore")),
            confidenceScore=_score(p.get("ConfidenceScore")),
            raw=dict(p),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofResult":
        allowed = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in (data or {}).items() if k in allowed})


@dataclass
class Operation:
    # Core identifiers
    operationId: str = ""
    kind: str = ENROLLMENT
    userId: str = ""
    # Which provider endpoint family answers for this id
    isTransaction: bool = False

    # Lifetime (epoch ms)
    createdAt: int = 0
    expiresAt: int = 0
    updatedAt: int = 0

    # Local, authoritative; written only by the state machine
    state: str = "CREATED"  # CREATED/PENDING/COMPLETED/FAILED/EXPIRED
    # Detector's settled decision: accepted/rejected/manual_review/expired
    outcome: Optional[str] = None
    reasons: List[str] = field(default_factory=list)
    # Presence is the sole proof of genuine completion
    completedAt: Optional[int] = None
    signalSource: Optional[str] = None  # event/poll/timeout/review/cancel

    # Advisory: last raw codes observed from the provider
    remoteState: Dict[str, Any] = field(default_factory=dict)

    # Receipt time of a recognized success event; never a completion time
    eventReceivedAt: Optional[int] = None

    # Immutable once set (ProofResult.to_dict())
    proof: Optional[Dict[str, Any]] = None

    # Client hand-off
    captureUrl: str = ""

    # Polling bookkeeping
    pollCount: int = 0
    lastPolledAt: Optional[int] = None

    credentialIssued: bool = False
    transitions: List[Dict[str, Any]] = field(default_factory=list)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_settled(self) -> bool:
        """True once the detector has decided; manual review settles without a terminal state."""
        return self.is_terminal() or self.outcome is not None

    def proof_result(self) -> Optional[ProofResult]:
        if not self.proof:
            return None
        return ProofResult.from_dict(self.proof)


@dataclass
class EnrollmentRecord:
    userId: str = ""
    operationId: str = ""
    status: str = "CREATED"  # mirrors Operation.state
    updatedAt: int = 0


@dataclass
class IssuedCredential:
    accessToken: str
    refreshToken: str
    expiry: int  # epoch seconds
    tokenType: str = "Bearer"
