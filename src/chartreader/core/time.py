from __future__ import annotations

from datetime import datetime, timezone


def now_utc_iso() -> str:
    """Return an ISO timestamp in UTC with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")
