from __future__ import annotations

import uuid


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def new_run_id() -> str:
    """Short, URL-safe identifier for extraction runs."""
    return uuid.uuid4().hex[:21]
