from __future__ import annotations

import threading
import time
from typing import Optional

from ..domain.errors import PipelineCancelled

_PARENT_POLL_SECONDS = 0.1


class CancelToken:
    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the token is cancelled."""
        deadline = time.monotonic() + max(0.0, seconds)
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            timeout = min(remaining, _PARENT_POLL_SECONDS) if self._parent is not None else remaining
            self._event.wait(timeout)
        return True

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)


__all__ = ["CancelToken"]
