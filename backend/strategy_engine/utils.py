# Utility functions
import re
import time
from datetime import datetime, timezone
from typing import Optional, Union

_TIMEFRAME_RE = re.compile(r"^(\d+)\s*([smhdwSHDWM])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800, "M": 2592000}


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds"""
    return int(time.time() * 1000)


def ms_to_iso(ts_ms: Optional[int]) -> Optional[str]:
    """Format epoch milliseconds as an ISO-8601 UTC string"""
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat()


def to_epoch_ms(value: Union[str, int, float]) -> int:
    """Epoch ms from epoch seconds, epoch ms or an ISO-8601 string."""
    if isinstance(value, str):
        raw = value.strip()
        try:
            value = float(raw)
        except ValueError:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
    # Anything below 1e11 is seconds (1e11 ms is 1973)
    if abs(value) < 1e11:
        return int(value * 1000)
    return int(value)


def format_timeframe(seconds: int) -> str:
    """Format timeframe seconds to human readable string (largest exact unit)"""
    if seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    elif seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    elif seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def timeframe_seconds(timeframe: Union[str, int]) -> int:
    """Parse '5m' / '1h' / '1M' / 300 into seconds. Raises ValueError on garbage.

    'M' is a month (30 days, the usual exchange convention) and is the only
    case-sensitive unit; '1H' and '1h' are the same.
    """
    if isinstance(timeframe, bool):
        raise ValueError(f"Invalid timeframe: {timeframe!r}")
    if isinstance(timeframe, (int, float)):
        seconds = int(timeframe)
    else:
        raw = str(timeframe or "").strip()
        if raw.isdigit():
            seconds = int(raw)
        else:
            m = _TIMEFRAME_RE.match(raw)
            if not m:
                raise ValueError(f"Invalid timeframe: {timeframe!r}")
            unit = m.group(2) if m.group(2) == "M" else m.group(2).lower()
            seconds = int(m.group(1)) * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise ValueError(f"Invalid timeframe: {timeframe!r}")
    return seconds


def normalize_timeframe(timeframe: Union[str, int]) -> str:
    """Canonical timeframe label so '60' and 60 match '1m' and '1H' matches '1h'.

    Month labels ('1M') keep their upper-case unit. Labels that don't parse
    (exchange-specific names) are only trimmed, so they still match themselves.
    """
    if isinstance(timeframe, str):
        m = _TIMEFRAME_RE.match(timeframe.strip())
        if m and m.group(2) == "M":
            return f"{int(m.group(1))}M"
    try:
        return format_timeframe(timeframe_seconds(timeframe))
    except ValueError:
        return str(timeframe or "").strip()


def normalize_symbol(symbol: str) -> str:
    return str(symbol or "").strip().upper()
