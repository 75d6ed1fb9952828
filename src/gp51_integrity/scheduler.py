"""Periodic background tasks built on APScheduler.

Real-time monitoring, scheduled reconciliation and position polling each run
as a PeriodicTask. A tick that raises is logged and the next tick still runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class PeriodicTask:
    """A named callable run every ``interval_seconds`` on a background scheduler."""

    def __init__(self, name: str, func: Callable[[], object], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.tick_count = 0
        self.failure_count = 0
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self._scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> None:
        """Run one tick. Exceptions are logged and recorded, never raised."""
        self.tick_count += 1
        self.last_run_at = datetime.now(UTC)
        try:
            self.func()
            self.last_error = None
        except Exception as exc:
            self.failure_count += 1
            self.last_error = str(exc)
            logger.exception("Periodic task %s failed on tick %d", self.name, self.tick_count)

    def start(self, run_immediately: bool = False) -> PeriodicTask:
        if self.is_running:
            logger.info("Periodic task %s already running", self.name)
            return self

        scheduler = BackgroundScheduler(timezone="UTC")
        # Passing next_run_time=None would add the job paused.
        extra: dict[str, object] = {"next_run_time": datetime.now(UTC)} if run_immediately else {}
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.name,
            name=self.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **extra,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Started periodic task %s every %ss", self.name, self.interval_seconds)
        return self

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Stopped periodic task %s", self.name)
