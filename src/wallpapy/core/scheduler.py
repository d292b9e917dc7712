"""Background thread that triggers scheduled generation runs."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from wallpapy.core.catalog import CatalogStore
from wallpapy.core.errors import GenerationInProgressError, StorageError
from wallpapy.core.models import RunTrigger, utcnow
from wallpapy.core.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


class GenerationScheduler:
    """Start a generation run every ``interval``.

    The next run is due ``interval`` after the start of the last run in the
    catalog's run log, so restarts do not reset the schedule. When no run was
    ever recorded the first one is due immediately.

    Args:
        orchestrator: Runs the generations
        catalog: Source of the last recorded run
        interval: Time between run starts
        idle_poll: Upper bound on one sleep, so ``stop`` is noticed quickly
            even with long intervals
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        catalog: CatalogStore,
        interval: timedelta,
        idle_poll: float = 60.0,
    ):
        if interval <= timedelta(0):
            raise ValueError(f"Scheduler interval must be positive, got {interval}")
        self.orchestrator = orchestrator
        self.catalog = catalog
        self.interval = interval
        self.idle_poll = idle_poll
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def seconds_until_next_run(self, now: datetime | None = None) -> float:
        """Seconds until the next scheduled run is due (0 when overdue)."""
        now = now or utcnow()
        last_run = self.catalog.last_run()
        if last_run is None:
            return 0.0
        due = last_run.started_at + self.interval
        return max(0.0, (due - now).total_seconds())

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="wallpapy-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started, interval {self.interval}")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the loop to exit and wait up to ``timeout`` for it.

        A run that is already in progress is not interrupted.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def tick(self) -> bool:
        """Trigger a run if one is due.

        Returns:
            True if a run was started (whatever its outcome)
        """
        if self.seconds_until_next_run() > 0:
            return False
        try:
            run = self.orchestrator.run_generation_cycle(trigger=RunTrigger.SCHEDULED)
        except GenerationInProgressError:
            logger.info("Scheduled run skipped: a generation is already in progress")
            return False
        logger.info(f"Scheduled run {run.id} finished with status {run.status.value}")
        return True

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                started = self.tick()
                due_in = self.seconds_until_next_run()
            except StorageError as e:
                logger.error(f"Scheduler cannot read the run log: {e}")
                wait = self.idle_poll
            else:
                # A skipped tick is still due; poll again after idle_poll
                wait = due_in if started or due_in > 0 else self.idle_poll
            self._stop_event.wait(min(max(wait, 1.0), self.idle_poll))
