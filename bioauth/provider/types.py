"""
Remote status normalization
---------------------------
The operations endpoint answers with numeric codes, the transactions endpoint
with either numbers or strings. Both are folded into one RemoteStatus so the
detector never has to care which endpoint answered.

State:  0=Pending 1=Completed 2=Failed 3=Expired
Result: 0=None    1=Success   2=Failure
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from bioauth.utils.time import parse_timestamp_ms

REMOTE_PENDING = 0
REMOTE_COMPLETED = 1
REMOTE_FAILED = 2
REMOTE_EXPIRED = 3

RESULT_NONE = 0
RESULT_SUCCESS = 1
RESULT_FAILURE = 2

_STATE_NAMES = {
    "pending": REMOTE_PENDING,
    "inprogress": REMOTE_PENDING,
    "unknown": REMOTE_PENDING,
    "completed": REMOTE_COMPLETED,
    "complete": REMOTE_COMPLETED,
    "failed": REMOTE_FAILED,
    "failure": REMOTE_FAILED,
    "expired": REMOTE_EXPIRED,
}

_RESULT_NAMES = {
    "none": RESULT_NONE,
    "success": RESULT_SUCCESS,
    "succeeded": RESULT_SUCCESS,
    "failure": RESULT_FAILURE,
    "failed": RESULT_FAILURE,
}


def _code(value, names: Dict[str, int]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    s = str(value).strip().lower().replace(" ", "").replace("_", "")
    if s.isdigit():
        return int(s)
    return names.get(s)


def _field(data: Dict[str, Any], *names):
    for n in names:
        if n in data:
            return data[n]
    return None


@dataclass(frozen=True)
class RemoteStatus:
    """
    One observation of the provider's view of an operation.

    queryable=False is the NotYetQueryable outcome: the provider answered
    "not found" because it has not registered the operation yet. It is a
    normal value, not an error.
    """
    queryable: bool = True
    stateCode: Optional[int] = None
    resultCode: Optional[int] = None
    completedAt: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def not_yet_queryable(cls) -> "RemoteStatus":
        return cls(queryable=False)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RemoteStatus":
        data = data or {}
        return cls(
            queryable=True,
            stateCode=_code(_field(data, "State", "state", "Status", "status"), _STATE_NAMES),
            resultCode=_code(_field(data, "Result", "result"), _RESULT_NAMES),
            completedAt=parse_timestamp_ms(_field(data, "CompletedAt", "completedAt", "completed_at")),
            raw=dict(data),
        )

    @property
    def reports_success(self) -> bool:
        return self.resultCode == RESULT_SUCCESS

    @property
    def reports_failure(self) -> bool:
        return self.stateCode == REMOTE_FAILED or (
            self.stateCode == REMOTE_COMPLETED and self.resultCode == RESULT_FAILURE
        )

    @property
    def reports_expired(self) -> bool:
        return self.stateCode == REMOTE_EXPIRED

    def summary(self) -> Dict[str, Any]:
        """Advisory snapshot persisted on the operation."""
        return {
            "queryable": self.queryable,
            "stateCode": self.stateCode,
            "resultCode": self.resultCode,
            "completedAt": self.completedAt,
        }


@dataclass(frozen=True)
class CreatedOperation:
    operationId: str
    secret: str
    expiresAt: int  # epoch ms
    isTransaction: bool = False
    captureUrl: str = ""
