"""Single-flight scheduler driving the collect → generate → deliver pipeline."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from rssfeed_digest.delivery import DeliveryService
from rssfeed_digest.generator import DigestGenerator
from rssfeed_digest.models import LogLevel, LogType, ScheduleState, utcnow
from rssfeed_digest.repository import Storage, record_activity

logger = logging.getLogger(__name__)

CRON_EXPRESSIONS = {
    1: "0 * * * *",
    2: "0 */2 * * *",
    4: "0 */4 * * *",
    6: "0 */6 * * *",
    8: "0 */8 * * *",
    12: "0 */12 * * *",
    24: "0 0 * * *",
}
DEFAULT_FREQUENCY_HOURS = 4

ALREADY_RUNNING = "A scheduled task is already running"


class SchedulerState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class RunResult:
    success: bool
    digest_id: str | None = None
    email_sent: bool = False
    error: str | None = None
    skipped: bool = False


def cadence_hours(frequency_hours: int) -> int:
    """Map a frequency onto a supported cadence, defaulting to every 4 hours."""
    if frequency_hours in CRON_EXPRESSIONS:
        return frequency_hours
    return DEFAULT_FREQUENCY_HOURS


def cron_expression(frequency_hours: int) -> str:
    return CRON_EXPRESSIONS[cadence_hours(frequency_hours)]


def next_fire_time(frequency_hours: int, now: datetime) -> datetime:
    """Next top-of-hour boundary matching the cron cadence, strictly after now."""
    step = cadence_hours(frequency_hours)
    fire_at = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    while fire_at.hour % step:
        fire_at += timedelta(hours=1)
    return fire_at


class Scheduler:
    """Owns the recurring trigger and guarantees at most one run at a time.

    The run lock is a plain flag: it is checked and set before the first
    ``await`` of a run, so two coroutines on the same event loop can never
    both pass the check.
    """

    def __init__(
        self,
        storage: Storage,
        generator: DigestGenerator,
        delivery: DeliveryService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.generator = generator
        self.delivery = delivery
        self._clock = clock
        self._trigger: asyncio.Task | None = None
        self._active_run: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> SchedulerState:
        if self._running:
            return SchedulerState.RUNNING
        if self._trigger is not None and not self._trigger.done():
            return SchedulerState.IDLE
        return SchedulerState.DISABLED

    # --- Lifecycle ---

    async def start(self) -> ScheduleState:
        """Arm the trigger from the stored schedule."""
        return await self._rearm()

    async def stop(self) -> None:
        """Cancel the trigger and wait for any in-flight automatic run to settle."""
        await self._cancel_trigger()
        if self._active_run is not None and not self._active_run.done():
            await self._active_run

    async def update_schedule(
        self, enabled: bool | None = None, frequency_hours: int | None = None
    ) -> ScheduleState:
        """Store new schedule settings and re-arm the trigger accordingly."""
        fields: dict = {}
        if enabled is not None:
            fields["enabled"] = enabled
        if frequency_hours is not None:
            if frequency_hours <= 0:
                raise ValueError("frequency_hours must be positive")
            fields["frequency_hours"] = frequency_hours
        self.storage.update_schedule_state(**fields)
        return await self._rearm()

    async def _cancel_trigger(self) -> None:
        trigger, self._trigger = self._trigger, None
        if trigger is None or trigger.done():
            return
        trigger.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await trigger

    async def _rearm(self) -> ScheduleState:
        await self._cancel_trigger()

        state = self.storage.get_schedule_state()
        if not state.enabled:
            state = self.storage.update_schedule_state(next_run=None)
            record_activity(self.storage, LogType.SCHEDULER, "Scheduler disabled")
            return state

        next_run = self._clock() + timedelta(hours=state.frequency_hours)
        state = self.storage.update_schedule_state(next_run=next_run)
        self._trigger = asyncio.create_task(
            self._trigger_loop(state.frequency_hours), name="digest-scheduler"
        )
        record_activity(
            self.storage,
            LogType.SCHEDULER,
            f"Scheduler updated: runs every {state.frequency_hours} hours",
            frequency_hours=state.frequency_hours,
            cron_expression=cron_expression(state.frequency_hours),
            next_run=next_run.isoformat(),
        )
        return state

    async def _trigger_loop(self, frequency_hours: int) -> None:
        """Sleep until each cadence boundary and fire a scheduled run."""
        while True:
            fire_at = next_fire_time(frequency_hours, self._clock())
            delay = max((fire_at - self._clock()).total_seconds(), 0.0)
            logger.info("Next scheduled run at %s", fire_at.isoformat())
            await asyncio.sleep(delay)

            # Shielded so re-arming cancels the wait, never a run in progress
            self._active_run = asyncio.create_task(self.run_scheduled())
            try:
                await asyncio.shield(self._active_run)
            except Exception as e:
                logger.error("Scheduled run failed: %s", e)

    # --- Runs ---

    async def run_scheduled(self) -> RunResult:
        """Entry point for the automatic trigger. Skips if a run is in progress."""
        if self._running:
            record_activity(
                self.storage,
                LogType.SCHEDULER,
                "Scheduled task skipped - previous task still running",
            )
            return RunResult(success=False, error=ALREADY_RUNNING, skipped=True)
        return await self._run(manual=False)

    async def run_now(self) -> RunResult:
        """Manual trigger. Refuses to start while another run is in progress."""
        if self._running:
            return RunResult(success=False, error=ALREADY_RUNNING)
        return await self._run(manual=True)

    async def _run(self, manual: bool) -> RunResult:
        self._running = True
        try:
            try:
                result = await self._execute(manual)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.exception("Pipeline run crashed")
                record_activity(
                    self.storage,
                    LogType.ERROR,
                    f"Scheduled task error: {error}",
                    LogLevel.ERROR,
                    error=error,
                )
                result = RunResult(success=False, error=error)
            self._mark_run(self._clock())
            return result
        finally:
            self._running = False

    async def _execute(self, manual: bool) -> RunResult:
        label = "Manual" if manual else "Scheduled"
        record_activity(
            self.storage,
            LogType.SCHEDULER,
            "Manual RSS processing started" if manual else "Starting scheduled RSS processing",
        )
        self._mark_run(self._clock())

        generation = await self.generator.create_digest()
        if not generation.success:
            record_activity(
                self.storage,
                LogType.ERROR,
                f"{label} task failed: {generation.error}",
                LogLevel.ERROR,
                error=generation.error,
            )
            return RunResult(success=False, error=generation.error)

        digest_id = generation.digest_id
        delivery = await self.delivery.deliver(digest_id)
        if not delivery.success:
            record_activity(
                self.storage,
                LogType.ERROR,
                f"{label} task completed but email failed: {delivery.error}",
                LogLevel.ERROR,
                summary_id=digest_id,
                email_error=delivery.error,
            )
            return RunResult(success=False, digest_id=digest_id, error=delivery.error)

        record_activity(
            self.storage,
            LogType.SCHEDULER,
            f"{label} task completed successfully",
            summary_id=digest_id,
        )
        return RunResult(success=True, digest_id=digest_id, email_sent=True)

    def _mark_run(self, now: datetime) -> None:
        """Stamp last_run and push next_run one period past it."""
        state = self.storage.get_schedule_state()
        self.storage.update_schedule_state(
            last_run=now,
            next_run=now + timedelta(hours=state.frequency_hours) if state.enabled else None,
        )

    def get_status(self) -> dict:
        state = self.storage.get_schedule_state()
        return {
            "enabled": state.enabled,
            "running": self._running,
            "state": self.state.value,
            "frequency_hours": state.frequency_hours,
            "cron_expression": cron_expression(state.frequency_hours),
            "next_run": state.next_run.isoformat() if state.next_run else None,
            "last_run": state.last_run.isoformat() if state.last_run else None,
        }
