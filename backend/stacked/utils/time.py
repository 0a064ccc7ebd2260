"""Clock helpers – a single place for "now" in the units the sync core uses.

Sync events carry epoch **milliseconds** (what browser clients store), while
presence bookkeeping works in epoch seconds.
"""

import time
from datetime import datetime
from datetime import timezone


def now_ms() -> int:  # noqa: D401 – simple utility
    """Return current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


__all__ = ["now_ms", "utc_now", "utc_now_iso"]
