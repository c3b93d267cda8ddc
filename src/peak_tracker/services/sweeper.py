"""Periodic cleanup of expired sessions."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime

from peak_tracker.services.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one sweep."""

    cleaned: int = 0
    error: str | None = None

    def as_payload(self) -> dict[str, object]:
        if self.error is not None:
            return {"error": self.error}
        return {"cleaned": self.cleaned}


@dataclass
class ExpirySweeper:
    """Deletes expired sessions on a fixed interval.

    A failed sweep is logged and reported; the next tick tries again.
    """

    store: SessionStore
    interval_seconds: float = 300.0
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep and report how many sessions were removed."""
        try:
            cleaned = self.store.delete_expired_sessions(now)
        except Exception as exc:
            logger.exception("Expiry sweep failed")
            return SweepReport(error=str(exc) or type(exc).__name__)
        if cleaned:
            logger.info("Removed expired sessions", extra={"cleaned": cleaned})
        return SweepReport(cleaned=cleaned)

    async def run_forever(self) -> None:
        """Sweep, then sleep for the interval, until cancelled."""
        while True:
            await asyncio.to_thread(self.sweep)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Start the periodic task on the running loop if it isn't running."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        """Cancel the periodic task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
