"""Worker pool: one asyncio task per slot plus a monitor task."""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from ..foundation.clock import Clock, utcnow
from ..foundation.config import get_config_manager
from ..foundation.errors import ErrorContext, NotFoundError, ValidationError, handle_error
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.events import EventLevel
from ..models.job import Job, JobState
from ..models.worker import WorkerStatus
from .dispatcher import Dispatcher, SlotResult
from .execution import JobExecutionContext


class WorkerPool:
    """Runs claimed jobs with bounded concurrency.

    Each slot runs a loop of claim -> execute -> release. While a job runs a
    heartbeat task renews the slot; if the dispatcher has already declared
    the slot offline the running job is cancelled. The monitor checks
    heartbeats, replaces lost workers and, when elastic, resizes the pool
    from the average queue depth over a sliding window.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        registry,
        storage,
        extraction,
        fetcher,
        event_log=None,
        clock: Clock = utcnow,
        size: Optional[int] = None,
        elastic: Optional[bool] = None,
        min_workers: Optional[int] = None,
        max_workers: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
        idle_wait: Optional[float] = None,
        monitor_interval: Optional[float] = None,
        scale_window: Optional[int] = None,
    ):
        config = get_config_manager()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.dispatcher = dispatcher
        self.registry = registry
        self.storage = storage
        self.extraction = extraction
        self.fetcher = fetcher
        self.event_log = event_log
        self.clock = clock

        def setting(value, key, default):
            return config.get_setting(key, default) if value is None else value

        self.elastic = bool(setting(elastic, "workers.elastic", False))
        self.min_workers = max(1, int(setting(min_workers, "workers.min_workers", 1)))
        self.max_workers = max(self.min_workers, int(setting(max_workers, "workers.max_workers", 8)))
        size = int(setting(size, "workers.pool_size", 4))
        self.size = min(max(size, self.min_workers), self.max_workers) if self.elastic else max(1, size)
        self.heartbeat_interval = float(setting(heartbeat_interval, "workers.heartbeat_interval", 5.0))
        self.idle_wait = float(setting(idle_wait, "workers.idle_wait", 1.0))
        self.monitor_interval = float(setting(monitor_interval, "workers.monitor_interval", 1.0))
        self._depth_samples: Deque[int] = deque(maxlen=max(1, int(setting(scale_window, "workers.scale_window", 10))))

        self._tasks: Dict[str, asyncio.Task] = {}
        self._contexts: Dict[str, JobExecutionContext] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

        dispatcher.on_cancel_requested = self.cancel

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the initial slots and the monitor."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        for _ in range(self.size):
            await self._spawn()
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="worker-monitor")
        self.logger.info(f"Worker pool started with {self.size} workers (elastic={self.elastic})")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, give running jobs ``timeout`` seconds, then cancel.

        Jobs interrupted here stay Claimed/Running in storage and are swept
        back to Queued by the next startup.
        """
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        await self.dispatcher.close()

        tasks = list(self._tasks.values())
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            tasks.append(self._monitor_task)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks.clear()
        self._monitor_task = None
        self.logger.info("Worker pool stopped")

    async def _spawn(self) -> str:
        slot = await self.dispatcher.add_slot()
        self._tasks[slot.id] = asyncio.create_task(self._worker_loop(slot.id), name=slot.id)
        return slot.id

    # ---------------------------------------------- #
    # Worker
    async def _worker_loop(self, worker_id: str) -> None:
        """Main worker loop for processing jobs."""
        self.logger.info(f"Worker {worker_id} started")

        while self._running:
            try:
                status = await self.dispatcher.slot_status(worker_id)
                if status is None or status == WorkerStatus.OFFLINE:
                    break
                if status == WorkerStatus.DRAINING:
                    await self.dispatcher.remove_slot(worker_id)
                    self._event(EventLevel.INFO, f"Worker {worker_id} drained and removed", worker_id=worker_id)
                    break

                job = await self.dispatcher.claim_next(worker_id)
                if job is None:
                    await self.dispatcher.wait_for_work(timeout=self.idle_wait)
                    continue

                await self._execute(worker_id, job)

            except asyncio.CancelledError:
                raise
            except NotFoundError:
                break
            except Exception as e:
                handle_error(e, ErrorContext(operation="worker.loop", worker_id=worker_id))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.idle_wait)
                except asyncio.TimeoutError:
                    continue

        self._tasks.pop(worker_id, None)
        self.logger.info(f"Worker {worker_id} stopped")

    async def _execute(self, worker_id: str, job: Job) -> None:
        plugin = self.registry.find(job.plugin_id)
        if plugin is None:
            error = ValidationError(f"Plugin {job.plugin_id} no longer exists", field="plugin_id")
            await self.dispatcher.release_slot(worker_id, job.id, SlotResult(JobState.FAILED, error))
            return

        context = JobExecutionContext(
            job=job,
            plugin=plugin,
            worker_id=worker_id,
            dispatcher=self.dispatcher,
            storage=self.storage,
            extraction=self.extraction,
            fetcher=self.fetcher,
            clock=self.clock,
        )
        self._contexts[job.id] = context
        if self.dispatcher.cancel_requested(job.id):
            context.cancel()

        heartbeat = asyncio.create_task(self._heartbeat_loop(worker_id, context), name=f"{worker_id}-heartbeat")
        try:
            result = await context.run()
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._contexts.pop(job.id, None)

        await self.dispatcher.release_slot(worker_id, job.id, result.to_slot_result())

    async def _heartbeat_loop(self, worker_id: str, context: JobExecutionContext) -> None:
        while True:
            if not await self.dispatcher.heartbeat(worker_id):
                self.logger.warning(f"Worker {worker_id} was declared offline; abandoning job {context.job.id}")
                context.cancel()
                return
            await asyncio.sleep(self.heartbeat_interval)

    def cancel(self, job_id: str) -> bool:
        """Signal the context running ``job_id``. False if no worker runs it."""
        context = self._contexts.get(job_id)
        if context is None:
            return False
        context.cancel()
        return True

    # ---------------------------------------------- #
    # Monitor
    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.monitor_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                handle_error(e, ErrorContext(operation="worker.monitor"))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.monitor_interval)
            except asyncio.TimeoutError:
                continue

    async def monitor_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One monitor pass: heartbeat check, replacements and elastic sizing."""
        lost = await self.dispatcher.check_heartbeats(now)
        replaced: List[str] = []
        for worker_id in lost:
            task = self._tasks.pop(worker_id, None)
            if task is not None and not task.done():
                task.cancel()
            if self._running:
                new_id = await self._spawn()
                replaced.append(new_id)
                self._event(EventLevel.INFO, f"Worker {worker_id} replaced by {new_id}", worker_id=new_id)

        scaled = 0
        if self.elastic and self._running:
            scaled = await self._autoscale()
        return {"lost": lost, "replaced": replaced, "scaled": scaled}

    async def _autoscale(self) -> int:
        """Grow by one when work waits with no idle slot; drain one idle slot when the window was empty."""
        self._depth_samples.append(self.dispatcher.queue_depth)
        average = sum(self._depth_samples) / len(self._depth_samples)

        snapshot = await self.dispatcher.snapshot()
        statuses = [worker["status"] for worker in snapshot["workers"]]
        active = sum(1 for status in statuses if status in (WorkerStatus.IDLE.value, WorkerStatus.BUSY.value))
        idle = statuses.count(WorkerStatus.IDLE.value)

        if average >= 1 and idle == 0 and active < self.max_workers:
            worker_id = await self._spawn()
            self._event(
                EventLevel.INFO,
                f"Scaled up to {active + 1} workers (average queue depth {average:.1f})",
                worker_id=worker_id,
            )
            return 1

        window_full = len(self._depth_samples) == self._depth_samples.maxlen
        if window_full and average == 0 and active > self.min_workers:
            drained = await self.dispatcher.drain_slot()
            if drained:
                self._depth_samples.clear()
                self._event(EventLevel.INFO, f"Scaling down: draining {drained}", worker_id=drained)
                return -1
        return 0

    async def snapshot(self) -> Dict[str, Any]:
        """Slot table plus pool settings for the workers panel."""
        snapshot = await self.dispatcher.snapshot()
        snapshot.update({
            "pool": {
                "running": self._running,
                "size": sum(
                    1 for worker in snapshot["workers"]
                    if worker["status"] != WorkerStatus.OFFLINE.value
                ),
                "elastic": self.elastic,
                "min_workers": self.min_workers,
                "max_workers": self.max_workers,
                "heartbeat_interval": self.heartbeat_interval,
            }
        })
        return snapshot

    def _event(self, level: EventLevel, message: str, worker_id: Optional[str] = None) -> None:
        if self.event_log is not None:
            self.event_log.emit(level, "workers", message, detail={"worker_id": worker_id} if worker_id else None)
