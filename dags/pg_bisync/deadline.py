from __future__ import annotations

import logging
import time

LOG = logging.getLogger(__name__)


class SyncDeadlineExceeded(RuntimeError):
    """The caller-supplied deadline passed before the sync pass finished."""


class Deadline:
    """
    Wall-clock budget for one sync pass.

    guard() is called before every catalog query and batch statement: it raises
    once the budget is spent and otherwise caps the next statement with
    SET LOCAL statement_timeout. A Deadline built with seconds=None never expires.
    """

    def __init__(self, seconds: float | None = None, clock=time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining_ms(self) -> int | None:
        if self._expires_at is None:
            return None
        return max(0, int((self._expires_at - self._clock()) * 1000))

    def check(self, stage: str = "") -> None:
        remaining = self.remaining_ms()
        if remaining is not None and remaining <= 0:
            LOG.error("Sync deadline of %.1fs exceeded at %s", self.seconds, stage or "<unknown stage>")
            raise SyncDeadlineExceeded(f"Sync deadline of {self.seconds}s exceeded at {stage or 'unknown stage'}")

    def guard(self, cursor, stage: str = "") -> None:
        self.check(stage)
        remaining = self.remaining_ms()
        if remaining is None:
            return
        # SET takes no bind parameters. 0 would mean "no timeout", hence the floor of 1ms.
        cursor.execute(f"SET LOCAL statement_timeout = {max(1, int(remaining))}")
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("statement_timeout=%dms for %s", remaining, stage)


NO_DEADLINE = Deadline(None)
