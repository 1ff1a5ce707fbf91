"""Cron-driven assessment trigger.

Fires SettlementReporter.run() on a cron schedule. Each trigger runs in its
own task so a long run never delays the clock; a trigger that lands while a
run is still active is skipped by the reporter's execution lock and logged.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from croniter import croniter

from core.errors import RunInProgressError
from core.reporter import SettlementReporter
from schemas.result import RunSummary

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "0 */6 * * *"


class AssessmentScheduler:
    """Runs the reporter on a cron schedule until stopped.

    Attributes:
        reporter: The pipeline to trigger.
        schedule: Cron expression, evaluated in UTC.
        on_summary: Optional callback receiving every finished RunSummary.
        on_failure: Optional callback receiving the error of every run that
            aborted. Skipped triggers are not failures.
    """

    def __init__(
        self,
        reporter: SettlementReporter,
        schedule: str = DEFAULT_SCHEDULE,
        on_summary: Callable[[RunSummary], None] | None = None,
        on_failure: Callable[[Exception], None] | None = None,
    ) -> None:
        if not croniter.is_valid(schedule):
            raise ValueError(f"invalid cron schedule: {schedule!r}")
        self.reporter = reporter
        self.schedule = schedule
        self.on_summary = on_summary
        self.on_failure = on_failure
        self._loop_task: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()

    def next_fire(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return croniter(self.schedule, now).get_next(datetime)

    def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._loop(), name="assessment-scheduler")
            logger.info("Scheduler started with schedule '%s'.", self.schedule)

    async def stop(self) -> None:
        """Stop triggering and wait for any in-flight run to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.info("Scheduler stopped.")

    async def trigger(self) -> RunSummary | None:
        """Run the reporter once. Returns None if the trigger was skipped or failed."""
        try:
            summary = await self.reporter.run()
        except RunInProgressError:
            logger.warning("Trigger skipped: previous assessment run still in progress.")
            return None
        except Exception as exc:
            logger.error("Assessment run aborted: %s", exc)
            if self.on_failure is not None:
                self.on_failure(exc)
            return None

        if self.on_summary is not None:
            self.on_summary(summary)
        return summary

    async def _loop(self) -> None:
        while True:
            fire_at = self.next_fire()
            delay = (fire_at - datetime.now(timezone.utc)).total_seconds()
            logger.debug("Next assessment run at %s.", fire_at.isoformat())
            await asyncio.sleep(max(delay, 0))

            task = asyncio.create_task(self.trigger(), name=f"assessment-{fire_at.isoformat()}")
            self._runs.add(task)
            task.add_done_callback(self._runs.discard)
