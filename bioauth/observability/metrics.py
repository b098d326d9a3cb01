"""
Observability Metrics Snapshot
------------------------------
Lightweight Redis-backed counters and latency samples for the operation
lifecycle, consumed by /admin/metrics. Missing keys (first boot) read as
zero so the snapshot always has the same shape.
"""
from __future__ import annotations
import time
from typing import List, Tuple
from bioauth.store.redis_conn import get_redis

# Counters (INCR)
K_CREATED = "metrics:operations:created"
K_COMPLETED = "metrics:operations:completed"
K_FAILED = "metrics:operations:failed"
K_EXPIRED = "metrics:operations:expired"
K_REVIEW = "metrics:operations:manual_review"
K_POLLS = "metrics:poll:queries"
K_NOT_QUERYABLE = "metrics:poll:not_yet_queryable"
K_PROVIDER_ERRORS = "metrics:provider:unavailable"
K_EVENT_OK = "metrics:events:accepted"
K_EVENT_IGNORED = "metrics:events:ignored"

# Samples (LPUSH ms, trimmed)
K_COMPLETION_LAT = "metrics:completion:latencies"

COUNTERS = {
    "operations_created": K_CREATED,
    "operations_completed": K_COMPLETED,
    "operations_failed": K_FAILED,
    "operations_expired": K_EXPIRED,
    "operations_manual_review": K_REVIEW,
    "poll_queries": K_POLLS,
    "poll_not_yet_queryable": K_NOT_QUERYABLE,
    "provider_unavailable": K_PROVIDER_ERRORS,
    "events_accepted": K_EVENT_OK,
    "events_ignored": K_EVENT_IGNORED,
}

_MAX_SAMPLES = 500  # cap to bound percentile computation cost


def _percentile(data: List[float], p: float) -> float:
    """Deterministic percentile (nearest-rank on sorted data)."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])


def _incr(key: str) -> None:
    get_redis().incr(key, 1)


def increment_created() -> None:
    _incr(K_CREATED)

def increment_poll() -> None:
    _incr(K_POLLS)

def increment_not_yet_queryable() -> None:
    _incr(K_NOT_QUERYABLE)

def increment_provider_unavailable() -> None:
    _incr(K_PROVIDER_ERRORS)

def increment_event(accepted: bool) -> None:
    _incr(K_EVENT_OK if accepted else K_EVENT_IGNORED)


_STATE_KEYS = {
    "COMPLETED": K_COMPLETED,
    "FAILED": K_FAILED,
    "EXPIRED": K_EXPIRED,
    "manual_review": K_REVIEW,
}


def record_settled(state_or_outcome: str, latency_ms: int = 0) -> None:
    key = _STATE_KEYS.get(state_or_outcome)
    if not key:
        return
    r = get_redis()
    r.incr(key, 1)
    if state_or_outcome == "COMPLETED" and latency_ms > 0:
        r.lpush(K_COMPLETION_LAT, int(latency_ms))
        r.ltrim(K_COMPLETION_LAT, 0, _MAX_SAMPLES - 1)


def _read_latency_list(key: str) -> List[float]:
    r = get_redis()
    raw = r.lrange(key, 0, _MAX_SAMPLES - 1) or []
    out: List[float] = []
    for x in raw:
        try:
            out.append(float(x) / 1000.0)  # seconds
        except (TypeError, ValueError):
            continue
    return out


def _p50_p95(latencies_s: List[float]) -> Tuple[float, float]:
    if not latencies_s:
        return 0.0, 0.0
    return _percentile(latencies_s, 0.50), _percentile(latencies_s, 0.95)


def get_metrics_snapshot() -> dict:
    """
    Shape consumed by /admin/metrics:
      - one integer per counter in COUNTERS
      - completion_success_rate: completed / settled (%)
      - p50/p95 completion latency (seconds, creation -> COMPLETED)
    """
    r = get_redis()
    out = {}
    for name, key in COUNTERS.items():
        try:
            out[name] = int(r.get(key) or 0)
        except (TypeError, ValueError):
            out[name] = 0

    settled = (
        out["operations_completed"] + out["operations_failed"]
        + out["operations_expired"] + out["operations_manual_review"]
    )
    rate = (out["operations_completed"] / settled) * 100.0 if settled else 0.0
    p50, p95 = _p50_p95(_read_latency_list(K_COMPLETION_LAT))

    out["completion_success_rate"] = round(rate, 3)
    out["p50_completion_latency"] = round(p50, 3)
    out["p95_completion_latency"] = round(p95, 3)
    out["snapshot_at"] = int(time.time())
    return out
