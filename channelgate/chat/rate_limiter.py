"""Minimum spacing between widget messages from one chat session."""

from __future__ import annotations

import time
from collections.abc import Callable


class MessageIntervalLimiter:
    """Admits one message per ``min_interval_seconds`` for each session id.

    Only the last admitted time is kept per session; refused messages do
    not push the next slot back.
    """

    def __init__(
        self,
        min_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last_admitted: dict[str, float] = {}

    def check(self, session_id: str) -> bool:
        now = self._clock()
        last = self._last_admitted.get(session_id)
        if last is not None and now - last < self.min_interval_seconds:
            return False
        self._last_admitted[session_id] = now
        return True

    def forget(self, session_id: str) -> None:
        self._last_admitted.pop(session_id, None)
