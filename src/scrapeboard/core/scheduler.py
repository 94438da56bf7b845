"""Job scheduler: turns plugin schedules into jobs and applies the retry policy."""

import asyncio
import heapq
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from ..foundation.clock import Clock, utcnow
from ..foundation.config import get_config_manager
from ..foundation.errors import (
    ErrorContext, NotFoundError, RetryConfig, ScrapeboardError, SchedulerConfigError,
    ValidationError, calculate_retry_delay, handle_error, should_retry,
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.events import EventLevel
from ..models.job import Job, JobPriority, JobTrigger
from ..models.plugin import Plugin, PluginChanged, PluginChangeKind
from .schedule import Schedule, parse_schedule


@dataclass
class PluginPlan:
    """Scheduling state of one enabled plugin."""
    generation: int
    schedule: Optional[Schedule] = None
    next_fire_at: Optional[datetime] = None


class JobScheduler:
    """Decides when jobs are created and when failed jobs are retried.

    Plugins sit in a min-heap keyed by their next fire time. Heap entries
    carry the plan generation; edits bump the generation so stale entries
    are skipped when popped. Fire times advance from the previous scheduled
    time, never from "now", so the grid does not drift.
    """

    def __init__(
        self,
        registry,
        dispatcher,
        event_log=None,
        clock: Clock = utcnow,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_sleep: Optional[float] = None,
    ):
        config = get_config_manager()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.registry = registry
        self.dispatcher = dispatcher
        self.event_log = event_log
        self.clock = clock

        self.max_attempts = int(max_attempts or config.get_setting("scheduler.max_attempts", 3))
        self.retry_config = RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=float(
                backoff_base if backoff_base is not None else config.get_setting("scheduler.backoff_base", 1.0)
            ),
            max_delay=float(backoff_max or config.get_setting("scheduler.backoff_max", 300.0)),
        )
        self.max_sleep = float(max_sleep or config.get_setting("scheduler.max_sleep", 60.0))

        self._plans: Dict[str, PluginPlan] = {}
        self._pending: Set[str] = set()
        self._heap: List[Tuple[datetime, int, str, int]] = []
        self._retry_heap: List[Tuple[datetime, int, str]] = []
        self._order = itertools.count()
        self._generations = itertools.count(1)

        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

        self._unsubscribe = registry.subscribe(self.on_plugin_changed)
        dispatcher.on_failure = self.handle_failure

    # ---------------------------------------------- #
    # Plugin changes
    def on_plugin_changed(self, change: PluginChanged) -> None:
        """Re-plan a plugin after it was created, edited, toggled or deleted."""
        plugin = change.plugin
        if change.kind == PluginChangeKind.DELETED or plugin is None or not plugin.enabled:
            if self._plans.pop(change.plugin_id, None) is not None:
                self.logger.debug(f"Unscheduled plugin {change.plugin_id}")
            self._pending.discard(change.plugin_id)
            self._wakeup.set()
            return

        plan = self._plans.get(change.plugin_id)
        if plan is not None and plan.next_fire_at is not None and not change.schedule_changed:
            return

        self._plans[change.plugin_id] = PluginPlan(generation=next(self._generations))
        self._pending.add(change.plugin_id)
        self._wakeup.set()

    async def _plan_pending(self, now: datetime) -> None:
        for plugin_id in sorted(self._pending):
            self._pending.discard(plugin_id)
            plan = self._plans.get(plugin_id)
            plugin = self.registry.find(plugin_id)
            if plan is None or plugin is None or not plugin.enabled:
                continue
            try:
                schedule = parse_schedule(plugin.schedule, plugin_id=plugin_id)
            except SchedulerConfigError as e:
                await self._disable(plugin, e)
                continue
            plan.schedule = schedule
            plan.next_fire_at = schedule.first_fire(now, plugin.start_at)
            heapq.heappush(self._heap, (plan.next_fire_at, next(self._order), plugin_id, plan.generation))
            self.logger.debug(f"Plugin {plugin_id} next fires at {plan.next_fire_at.isoformat()}")

    async def _disable(self, plugin: Plugin, error: SchedulerConfigError) -> None:
        self._plans.pop(plugin.id, None)
        handle_error(error, ErrorContext(operation="scheduler.plan", plugin_id=plugin.id))
        self._event(
            EventLevel.ERROR,
            f"Invalid schedule {plugin.schedule!r}; plugin disabled: {error.message}",
            plugin_id=plugin.id,
            detail=error.to_dict(),
        )
        try:
            await self.registry.set_enabled(plugin.id, False, reason=error.message)
        except ScrapeboardError as e:
            self.logger.error(f"Failed to disable plugin {plugin.id}: {e}")

    # ---------------------------------------------- #
    # Ticking
    async def tick(self, now: Optional[datetime] = None) -> List[Job]:
        """Create jobs for every plugin that is due and release due retries.

        A failure while handling one plugin never affects the others.

        Returns:
            Jobs created by this tick
        """
        now = now or self.clock()
        await self._plan_pending(now)

        created: List[Job] = []
        while self._heap and self._heap[0][0] <= now:
            fire_at, _, plugin_id, generation = heapq.heappop(self._heap)
            plan = self._plans.get(plugin_id)
            if plan is None or plan.generation != generation:
                continue
            plugin = self.registry.find(plugin_id)
            if plugin is None or not plugin.enabled:
                self._plans.pop(plugin_id, None)
                continue

            try:
                schedule = parse_schedule(plugin.schedule, plugin_id=plugin_id)
            except SchedulerConfigError as e:
                await self._disable(plugin, e)
                continue

            try:
                job = await self._create_job(plugin, now, scheduled_for=fire_at)
                created.append(job)
            except Exception as e:
                handle_error(e, ErrorContext(operation="scheduler.tick", plugin_id=plugin_id))
                self._event(EventLevel.ERROR, f"Failed to create scheduled job: {e}", plugin_id=plugin_id)

            next_fire_at, missed = schedule.next_fire(fire_at, now)
            if missed:
                self.logger.warning(
                    f"Plugin {plugin_id} fell behind by {missed} intervals; skipping to {next_fire_at.isoformat()}"
                )
                self._event(
                    EventLevel.WARNING,
                    f"Skipped {missed} missed runs",
                    plugin_id=plugin_id,
                    detail={"missed": missed, "next_fire_at": next_fire_at.isoformat()},
                )
            plan.schedule = schedule
            plan.next_fire_at = next_fire_at
            heapq.heappush(self._heap, (next_fire_at, next(self._order), plugin_id, generation))

        await self._release_due_retries(now)
        return created

    async def _create_job(
        self,
        plugin: Plugin,
        now: datetime,
        scheduled_for: Optional[datetime] = None,
        priority: JobPriority = JobPriority.NORMAL,
        trigger: JobTrigger = JobTrigger.SCHEDULE,
    ) -> Job:
        job = Job(
            plugin_id=plugin.id,
            priority=priority,
            trigger=trigger,
            created_at=now,
            scheduled_for=scheduled_for,
            max_attempts=plugin.max_attempts or self.max_attempts,
        )
        job = await self.dispatcher.submit(job)
        self.metrics.increment_counter("jobs.created")
        self._event(
            EventLevel.INFO,
            "Manual run queued" if trigger == JobTrigger.MANUAL else "Scheduled run queued",
            plugin_id=plugin.id,
            job_id=job.id,
        )
        return job

    async def _release_due_retries(self, now: datetime) -> None:
        while self._retry_heap and self._retry_heap[0][0] <= now:
            _, _, job_id = heapq.heappop(self._retry_heap)
            await self.dispatcher.enqueue(job_id)

    async def run_now(self, plugin_id: str) -> Job:
        """Queue a high-priority manual run. The plugin's schedule is untouched.

        Raises:
            NotFoundError: If the plugin does not exist
            ValidationError: If the plugin has no fields to extract
        """
        plugin = self.registry.get(plugin_id)
        if not plugin.fields:
            raise ValidationError(f"Plugin {plugin_id} has no fields to extract", field="fields")
        return await self._create_job(
            plugin, self.clock(), priority=JobPriority.HIGH, trigger=JobTrigger.MANUAL
        )

    # ---------------------------------------------- #
    # Retry policy
    def retry_delay(self, attempt: int) -> float:
        """Backoff before the attempt after ``attempt``: ``base * 2^attempt``, capped."""
        return calculate_retry_delay(attempt, self.retry_config)

    async def handle_failure(self, job: Job, error: BaseException) -> None:
        """Retry a failed job or mark it permanently failed.

        Emits exactly one error event per failed attempt.
        """
        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        plugin_exists = self.registry.find(job.plugin_id) is not None

        if plugin_exists and should_retry(error, job.attempt, job.max_attempts):
            delay = self.retry_delay(job.attempt)
            ready_at = self.clock() + timedelta(seconds=delay)
            try:
                retried = await self.dispatcher.schedule_retry(job.id, ready_at)
            except NotFoundError:
                self.logger.warning(f"Job {job.id} vanished before its retry could be scheduled")
                return
            heapq.heappush(self._retry_heap, (ready_at, next(self._order), job.id))
            self._wakeup.set()
            self.metrics.increment_counter("jobs.retried")
            self._event(
                EventLevel.ERROR,
                f"Attempt {job.attempt}/{job.max_attempts} failed: {message}; retrying in {delay:g}s",
                plugin_id=job.plugin_id,
                job_id=job.id,
                detail={"error": job.error, "next_attempt": retried.attempt, "retry_at": ready_at.isoformat()},
            )
            return

        await self.dispatcher.finalize(job.id)
        self.metrics.increment_counter("jobs.failed")
        self._event(
            EventLevel.ERROR,
            f"Job failed permanently after attempt {job.attempt}/{job.max_attempts}: {message}",
            plugin_id=job.plugin_id,
            job_id=job.id,
            detail={"error": job.error},
        )

    def track_retry(self, job_id: str, ready_at: datetime) -> None:
        """Hold a queued job back until ``ready_at`` (used when reloading after restart)."""
        heapq.heappush(self._retry_heap, (ready_at, next(self._order), job_id))
        self._wakeup.set()

    # ---------------------------------------------- #
    # Introspection
    def next_fire_times(self) -> Dict[str, Optional[datetime]]:
        """Planned next fire time per enabled plugin (None while being planned)."""
        return {plugin_id: plan.next_fire_at for plugin_id, plan in sorted(self._plans.items())}

    def next_wakeup(self) -> Optional[datetime]:
        candidates = []
        while self._heap:
            fire_at, _, plugin_id, generation = self._heap[0]
            plan = self._plans.get(plugin_id)
            if plan is None or plan.generation != generation:
                heapq.heappop(self._heap)
                continue
            candidates.append(fire_at)
            break
        if self._retry_heap:
            candidates.append(self._retry_heap[0][0])
        return min(candidates) if candidates else None

    def _sleep_seconds(self, now: datetime) -> float:
        if self._pending:
            return 0.0
        wake_at = self.next_wakeup()
        if wake_at is None:
            return self.max_sleep
        return min(self.max_sleep, max(0.0, (wake_at - now).total_seconds()))

    # ---------------------------------------------- #
    # Loop
    async def run(self) -> None:
        """Tick, then sleep until the next due time or an early wakeup."""
        self.logger.info("Scheduler started")
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.tick()
            except Exception as e:
                handle_error(e, ErrorContext(operation="scheduler.run"))

            delay = self._sleep_seconds(self.clock())
            if delay <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="scheduler")

    async def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    def close(self) -> None:
        self._unsubscribe()

    def _event(self, level: EventLevel, message: str, plugin_id: Optional[str] = None,
               job_id: Optional[str] = None, detail: Optional[dict] = None) -> None:
        if self.event_log is not None:
            self.event_log.emit(level, "scheduler", message, plugin_id=plugin_id, job_id=job_id, detail=detail)
