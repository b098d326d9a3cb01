def _first(d: dict, *keys):
    for k in keys:
        v = d.get(k)
        if v is not None and v != "":
            return v
    return None


def _as_bool(v):
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "1", "yes"):
            return True
        if s in ("false", "0", "no"):
            return False
    if isinstance(v, (int, float)):
        return bool(v)
    return None


def _as_str(v):
    return None if v is None else str(v)


def _as_ts(v):
    if isinstance(v, bool):
        return None
    if isinstance(v, float):
        return int(v)
    return v if isinstance(v, (int, str)) else None


def normalize_capture_event(payload) -> dict:
    """
    Accepts the shapes the capture page forwards (raw postMessage data, the
    same wrapped in {"data": ...}, snake_case variants) and converts them
    into the canonical structure expected by CaptureEvent:

    {"type": ..., "pageName": ..., "success": ..., "status": ..., "timestamp": ...}
    """
    if payload is None:
        payload = {}
    if isinstance(payload, str):
        payload = {"type": payload}
    if not isinstance(payload, dict):
        payload = {}

    # postMessage wrappers
    inner = payload.get("data")
    if isinstance(inner, dict):
        payload = {**payload, **inner}

    return {
        "type": _as_str(_first(payload, "type", "eventType", "event_type", "event")),
        "pageName": _as_str(_first(payload, "pageName", "page_name", "page")),
        "success": _as_bool(_first(payload, "success", "isSuccess", "is_success")),
        "status": _as_str(_first(payload, "status", "state")),
        "timestamp": _as_ts(_first(payload, "timestamp", "completedAt", "completed_at", "ts")),
    }
