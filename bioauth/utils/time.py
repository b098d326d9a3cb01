import re
import time
from datetime import datetime, timezone
from typing import Optional

# Provider timestamps may carry 7 fractional digits; fromisoformat accepts at most 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

# Anything before this is a zero-valued placeholder, not a real completion time
_MIN_VALID_MS = 946684800000  # 2000-01-01T00:00:00Z


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(ts) -> Optional[int]:
    """
    Normalize a provider timestamp to epoch milliseconds.

    Accepts:
    - int/float: epoch ms (or seconds if suspiciously small)
    - ISO-8601 string, with or without trailing 'Z' / offset

    Returns None for null, empty, unparseable and zero-valued placeholder
    timestamps (e.g. "0001-01-01T00:00:00"). Unlike a display timestamp there
    is no fallback to "now": callers use presence as proof that something
    actually happened.
    """
    if ts is None or isinstance(ts, bool):
        return None
    try:
        if isinstance(ts, (int, float)):
            v = int(ts)
            # Heuristic: if looks like seconds (< 10^12), convert to ms.
            v = v * 1000 if 0 < v < 10**12 else v
        elif isinstance(ts, str):
            s = ts.strip()
            if not s:
                return None
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            s = _FRACTION_RE.sub(r"\1", s)
            dt = datetime.fromisoformat(s)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            v = int(dt.timestamp() * 1000)
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None
    if v < _MIN_VALID_MS:
        return None
    return v


def to_iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")
