from __future__ import annotations

import threading

from chartreader.core.errors import JobCancelledError

DEFAULT_CANCEL_REASON = "Cancelled by user request"


class CancellationToken:
    """Cooperative stop signal checked at pipeline checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or DEFAULT_CANCEL_REASON

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason or DEFAULT_CANCEL_REASON
        self._event.set()

    def raise_if_cancelled(self, context: str | None = None) -> None:
        if not self._event.is_set():
            return
        raise JobCancelledError(self.reason, checkpoint=context)
