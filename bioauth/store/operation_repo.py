import json
import inspect
from dataclasses import asdict
from typing import Optional

from bioauth.settings import settings
from bioauth.store.redis_conn import get_redis
from bioauth.store.models import Operation, EnrollmentRecord, IssuedCredential
from bioauth.observability.logging import log
from bioauth.utils.time import now_ms

OP_PREFIX = "operation:"
ENROLLMENT_PREFIX = "enrollment:"


def _op_key(operation_id: str) -> str:
    return f"{OP_PREFIX}{operation_id}"


def _enrollment_key(user_id: str) -> str:
    return f"{ENROLLMENT_PREFIX}{user_id}"


def _credential_key(operation_id: str) -> str:
    return f"{OP_PREFIX}{operation_id}:credential"


def _cancel_key(operation_id: str) -> str:
    return f"{OP_PREFIX}{operation_id}:cancel"


def _filter_kwargs(cls, data: dict) -> dict:
    """
    Drop unknown fields so cls(**kwargs) never explodes on records written by
    an older or newer build.
    """
    allowed = set(inspect.signature(cls).parameters.keys())
    dropped = [k for k in data if k not in allowed]
    if dropped:
        log(event="record_fields_dropped", recordType=cls.__name__, fields=dropped)
    return {k: v for k, v in data.items() if k in allowed}


def load_operation(operation_id: str) -> Optional[Operation]:
    r = get_redis()
    raw = r.get(_op_key(operation_id))
    if not raw:
        return None
    data = json.loads(raw)
    return Operation(**_filter_kwargs(Operation, data))


def save_operation(op: Operation) -> None:
    r = get_redis()
    op.updatedAt = now_ms()
    r.set(_op_key(op.operationId), json.dumps(asdict(op)), ex=int(settings.OPERATION_RECORD_TTL_SEC))


def load_enrollment(user_id: str) -> Optional[EnrollmentRecord]:
    r = get_redis()
    raw = r.get(_enrollment_key(user_id))
    if not raw:
        return None
    return EnrollmentRecord(**_filter_kwargs(EnrollmentRecord, json.loads(raw)))


def save_enrollment(record: EnrollmentRecord) -> None:
    r = get_redis()
    record.updatedAt = now_ms()
    r.set(_enrollment_key(record.userId), json.dumps(asdict(record)))


def delete_enrollment(user_id: str) -> None:
    get_redis().delete(_enrollment_key(user_id))


def store_credential(operation_id: str, credential: IssuedCredential) -> None:
    r = get_redis()
    r.set(
        _credential_key(operation_id),
        json.dumps(asdict(credential)),
        ex=int(settings.CREDENTIAL_PICKUP_TTL_SEC),
    )


def take_credential(operation_id: str) -> Optional[IssuedCredential]:
    """Hand issued tokens out once. GETDEL reads and deletes in one step, so concurrent readers cannot both win."""
    raw = get_redis().getdel(_credential_key(operation_id))
    if not raw:
        return None
    return IssuedCredential(**_filter_kwargs(IssuedCredential, json.loads(raw)))


def request_cancel(operation_id: str) -> None:
    get_redis().set(_cancel_key(operation_id), "1", ex=int(settings.OPERATION_RECORD_TTL_SEC))


def is_cancel_requested(operation_id: str) -> bool:
    return bool(get_redis().get(_cancel_key(operation_id)))


def clear_cancel(operation_id: str) -> None:
    get_redis().delete(_cancel_key(operation_id))
