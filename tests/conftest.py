import pytest
from unittest.mock import patch, MagicMock

from bioauth.core.state_machine import OperationStateMachine
from bioauth.provider.types import CreatedOperation, RemoteStatus
from bioauth.store.models import AUTHENTICATION, IssuedCredential, ProofResult
from bioauth.utils.time import now_ms

COMPLETED_AT = 1714557600000  # 2024-05-01T10:00:00Z

GOOD_PROOF = ProofResult(livenessPassed=True, matchScore=0.95, confidenceScore=0.97)
REVIEW_PROOF = ProofResult(livenessPassed=True, matchScore=0.70, confidenceScore=0.97)
LIVENESS_FAILED_PROOF = ProofResult(livenessPassed=False, matchScore=0.99, confidenceScore=0.99)

NOT_FOUND = RemoteStatus.not_yet_queryable()
STILL_PENDING = RemoteStatus(stateCode=0, resultCode=0)
DONE = RemoteStatus(stateCode=1, resultCode=1, completedAt=COMPLETED_AT)


class FakeRedis:
    """The handful of commands the repo, the lock and the metrics use. TTLs are ignored."""

    def __init__(self):
        self.data = {}
        self.lists = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None, px=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value if isinstance(value, str) else str(value)
        return True

    def getdel(self, key):
        return self.data.pop(key, None)

    def delete(self, *keys):
        removed = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                removed += 1
        return removed

    def incr(self, key, amount=1):
        value = int(self.data.get(key) or 0) + amount
        self.data[key] = str(value)
        return value

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for v in values:
            items.insert(0, str(v))
        return len(items)

    @staticmethod
    def _slice(items, start, end):
        return items[start:] if end == -1 else items[start:end + 1]

    def ltrim(self, key, start, end):
        self.lists[key] = self._slice(self.lists.get(key, []), start, end)
        return True

    def lrange(self, key, start, end):
        return self._slice(self.lists.get(key, []), start, end)

    def eval(self, script, numkeys, *args):
        # only the lock release script is ever evaluated
        key, token = args[0], args[1]
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0


@pytest.fixture
def fake_redis():
    r = FakeRedis()
    with patch("bioauth.store.operation_repo.get_redis", return_value=r), \
         patch("bioauth.utils.lock.get_redis", return_value=r), \
         patch("bioauth.observability.metrics.get_redis", return_value=r):
        yield r


@pytest.fixture
def issuer():
    return MagicMock(return_value=IssuedCredential(accessToken="acc-token", refreshToken="ref-token", expiry=1900000000))


@pytest.fixture
def machine(fake_redis, issuer):
    return OperationStateMachine(issuer=issuer)


@pytest.fixture
def provider():
    """Operation client double: completed + good proof unless a test says otherwise."""
    client = MagicMock()
    client.query_status.return_value = DONE
    client.fetch_result.return_value = GOOD_PROOF
    return client


@pytest.fixture
def register(machine):
    def _register(operation_id="op-1", kind=AUTHENTICATION, user_id="user-1", ttl_sec=300, pending=True):
        created = CreatedOperation(
            operationId=operation_id,
            secret="one-time",
            expiresAt=now_ms() + ttl_sec * 1000,
            isTransaction=kind == AUTHENTICATION,
            captureUrl=f"http://capture.local/?operationId={operation_id}",
        )
        op = machine.register(created, kind, user_id)
        if pending:
            op = machine.mark_pending(operation_id)
        return op

    return _register
