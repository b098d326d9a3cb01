from contextlib import contextmanager
import time
import uuid
from bioauth.store.redis_conn import get_redis
from bioauth.settings import settings
from bioauth.observability.logging import log

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


@contextmanager
def operation_lock(operation_id: str, ttl_ms: int = 0, attempts: int = 20, spin_sec: float = 0.05):
    """
    Distributed lock to ensure single-writer per operation.

    The event listener and the polling task race for the same record; whoever
    holds this lock re-reads the record and performs (or discards) the
    transition.
    """
    r = get_redis()
    key = f"lock:operation:{operation_id}"
    token = uuid.uuid4().hex
    ttl_ms = int(ttl_ms or settings.OPERATION_LOCK_TTL_MS)
    acquired = bool(r.set(key, token, px=ttl_ms, nx=True))

    try:
        if not acquired:
            for _ in range(attempts):
                time.sleep(spin_sec)
                if r.set(key, token, px=ttl_ms, nx=True):
                    acquired = True
                    break

            if not acquired:
                raise LockNotAcquired(f"Could not acquire lock for operation {operation_id}")

        yield
    finally:
        if acquired:
            # Release only if we own it
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except Exception as e:
                # The TTL frees the key anyway
                log(event="operation_lock_release_failed", operationId=operation_id, error=str(e))
