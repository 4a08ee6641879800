"""
Daily Trigger — invokes the Job Dispatcher once per day at a fixed UTC time.

Deployments that already have an external cron (``0 0 * * *``) call
``run_once`` (or the ``dispatch`` CLI command) instead of starting the loop.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

DispatchFn = Callable[[], Awaitable[dict[str, Any]]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def seconds_until_next(now: datetime, hour: int = 0, minute: int = 0) -> float:
    """Seconds from ``now`` until the next HH:MM UTC. Exactly at HH:MM means a full day."""
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid trigger time {hour:02d}:{minute:02d}")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyTrigger:
    """
    Background loop that sleeps until the next trigger time and dispatches.

    A failed dispatch is logged and the loop waits for the next day; the
    dispatcher is idempotent per (id, date) so a manual re-run is safe.
    """

    def __init__(
        self,
        dispatch_fn: DispatchFn,
        hour: int = 0,
        minute: int = 0,
        now_fn: Callable[[], datetime] = _utc_now,
    ):
        self._dispatch_fn = dispatch_fn
        self.hour = hour
        self.minute = minute
        self._now = now_fn
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    async def run_once(self) -> dict[str, Any]:
        result = await self._dispatch_fn()
        self.runs += 1
        logger.info("daily_trigger_fired", run=self.runs, **result)
        return result

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run(), name="daily_trigger")
        logger.info("daily_trigger_started",
                    at=f"{self.hour:02d}:{self.minute:02d}Z",
                    next_in_s=round(seconds_until_next(self._now(), self.hour, self.minute)))

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("daily_trigger_stopped")

    async def wait(self) -> None:
        """Block until the loop ends (used by the ``schedule`` CLI command)."""
        if self._task:
            await self._task

    async def _run(self) -> None:
        while self._running:
            delay = seconds_until_next(self._now(), self.hour, self.minute)
            try:
                await asyncio.sleep(delay)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("daily_trigger_dispatch_failed", error=str(e), exc_info=True)
