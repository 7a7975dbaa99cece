import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

_TICK = timedelta(microseconds=1)

_lock = threading.Lock()
_last: Optional[datetime] = None


def utc_now() -> datetime:
    """Aware UTC timestamp, strictly increasing within this process."""
    global _last
    now = datetime.now(timezone.utc)
    with _lock:
        if _last is not None and now <= _last:
            now = _last + _TICK
        _last = now
    return now


def after(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly later than previous (which may come from another process)."""
    now = now or utc_now()
    if previous is not None and now <= previous:
        return previous + _TICK
    return now
