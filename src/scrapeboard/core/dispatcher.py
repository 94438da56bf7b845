"""Job queue and worker slot table.

The dispatcher owns the only mutable shared state of the engine: the
priority queue of claimable jobs, the live (non-terminal) jobs, and the
worker slots. All of it is guarded by a single ``asyncio.Lock``; claiming a
job is one critical section, so two workers can never claim the same job.
Storage writes happen after the lock is released and are ordered by the
job's revision number.
"""

import asyncio
import heapq
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..foundation.clock import Clock, utcnow
from ..foundation.config import get_config_manager
from ..foundation.errors import (
    JobStateError, NotFoundError, ScrapeboardError, ValidationError, WorkerTimeout, error_payload
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.events import EventLevel
from ..models.job import Job, JobState
from ..models.worker import WorkerSlot, WorkerStatus

FailureCallback = Callable[[Job, BaseException], Awaitable[None]]
CancelCallback = Callable[[str], None]


@dataclass
class SlotResult:
    """Outcome a worker reports when releasing its slot."""
    state: JobState
    error: Optional[BaseException] = None
    items_processed: Optional[int] = None
    items_total: Optional[int] = None


class Dispatcher:
    """Priority queue plus slot table behind one lock."""

    def __init__(
        self,
        storage=None,
        event_log=None,
        clock: Clock = utcnow,
        heartbeat_timeout: Optional[float] = None,
    ):
        config = get_config_manager()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.storage = storage
        self.event_log = event_log
        self.clock = clock
        self.heartbeat_timeout = float(
            heartbeat_timeout or config.get_setting("workers.heartbeat_timeout", 30.0)
        )

        self._lock = asyncio.Lock()
        self._work_available = asyncio.Condition(self._lock)
        self._heap: List[Tuple[int, datetime, int, str]] = []
        self._in_heap: Set[str] = set()
        self._jobs: Dict[str, Job] = {}
        self._slots: Dict[str, WorkerSlot] = {}
        self._cancel_requested: Set[str] = set()
        self._order = itertools.count()
        self._slot_ids = itertools.count(1)
        self._closed = False

        self.on_failure: Optional[FailureCallback] = None
        self.on_cancel_requested: Optional[CancelCallback] = None

    # ---------------------------------------------- #
    # Helpers (call with the lock held)
    def _push(self, job: Job) -> None:
        if job.id in self._in_heap:
            return
        heapq.heappush(self._heap, (-int(job.priority), job.created_at, next(self._order), job.id))
        self._in_heap.add(job.id)

    def _pop_claimable(self) -> Optional[Job]:
        while self._heap:
            _, _, _, job_id = heapq.heappop(self._heap)
            if job_id not in self._in_heap:
                continue
            self._in_heap.discard(job_id)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.QUEUED:
                return job
        return None

    def _slot(self, worker_id: str) -> WorkerSlot:
        slot = self._slots.get(worker_id)
        if slot is None:
            raise NotFoundError(f"Worker not found: {worker_id}", resource_type="worker", resource_id=worker_id)
        return slot

    def _update_gauges(self) -> None:
        self.metrics.set_gauge("queue.depth", len(self._in_heap))
        self.metrics.set_gauge("workers.size", sum(
            1 for s in self._slots.values() if s.status != WorkerStatus.OFFLINE
        ))
        self.metrics.set_gauge("workers.busy", sum(
            1 for s in self._slots.values() if s.status == WorkerStatus.BUSY
        ))

    async def _persist(self, job: Job) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.save_job(job)
        except ScrapeboardError as e:
            self.logger.error(f"Failed to persist job {job.id} ({job.state.value}): {e}")

    def _event(self, level: EventLevel, component: str, message: str, job: Optional[Job] = None, **detail: Any) -> None:
        if self.event_log is not None:
            self.event_log.emit(
                level,
                component,
                message,
                plugin_id=job.plugin_id if job else None,
                job_id=job.id if job else None,
                detail=detail or None,
            )

    # ---------------------------------------------- #
    # Queue
    @property
    def queue_depth(self) -> int:
        """Jobs currently claimable."""
        return len(self._in_heap)

    async def submit(self, job: Job, persist: bool = True, ready: bool = True) -> Job:
        """Add a Queued job.

        Args:
            job: Job in state QUEUED
            persist: Write the job to storage
            ready: Make it claimable now; otherwise it waits for ``enqueue``

        Raises:
            JobStateError: If the job is not QUEUED
            ValidationError: If a job with the same id is already live
        """
        if job.state != JobState.QUEUED:
            raise JobStateError(
                f"Only queued jobs can be submitted, got {job.state.value}",
                current_state=job.state.value,
                target_state=JobState.QUEUED.value,
            )
        async with self._lock:
            if job.id in self._jobs:
                raise ValidationError(f"Job already submitted: {job.id}", field="id")
            self._jobs[job.id] = job
            if ready:
                self._push(job)
                self._work_available.notify()
            self._update_gauges()
            snapshot = job.copy()

        if persist:
            await self._persist(snapshot)
        return snapshot

    async def enqueue(self, job_id: str) -> bool:
        """Make a queued job (e.g. one whose retry delay elapsed) claimable."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.QUEUED:
                return False
            self._push(job)
            self._work_available.notify()
            self._update_gauges()
            return True

    async def wait_for_work(self, timeout: Optional[float] = None) -> bool:
        """Wait until a job is claimable. Returns False on timeout or close."""
        async with self._work_available:
            if self._in_heap:
                return True
            if self._closed:
                return False
            try:
                await asyncio.wait_for(
                    self._work_available.wait_for(lambda: bool(self._in_heap) or self._closed),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return False
            return bool(self._in_heap)

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the highest-priority queued job for an idle slot.

        Returns:
            A copy of the claimed job, or None if the slot is not idle or
            nothing is queued

        Raises:
            NotFoundError: If the worker has no slot
        """
        async with self._lock:
            slot = self._slot(worker_id)
            if slot.status != WorkerStatus.IDLE:
                return None
            job = self._pop_claimable()
            if job is None:
                return None

            now = self.clock()
            job.transition(JobState.CLAIMED, now)
            job.worker_id = worker_id
            slot.status = WorkerStatus.BUSY
            slot.current_job_id = job.id
            slot.last_heartbeat = now
            self._update_gauges()
            snapshot = job.copy()

        self.metrics.increment_counter("jobs.claimed")
        self._event(EventLevel.DEBUG, "dispatcher", f"Job claimed by {worker_id}", snapshot, worker_id=worker_id)
        await self._persist(snapshot)
        return snapshot

    def cancel_requested(self, job_id: str) -> bool:
        return job_id in self._cancel_requested

    async def mark_running(self, job_id: str, worker_id: str) -> Job:
        """Claimed -> Running for the owning worker.

        Raises:
            JobStateError: If the worker no longer owns a claimed job
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.worker_id != worker_id or job.state != JobState.CLAIMED:
                raise JobStateError(
                    f"Worker {worker_id} does not hold claimed job {job_id}",
                    current_state=job.state.value if job else None,
                    target_state=JobState.RUNNING.value,
                )
            job.transition(JobState.RUNNING, self.clock())
            snapshot = job.copy()

        self._event(
            EventLevel.INFO, "worker",
            f"Job started (attempt {snapshot.attempt}/{snapshot.max_attempts})",
            snapshot, worker_id=worker_id,
        )
        await self._persist(snapshot)
        return snapshot

    async def update_progress(
        self,
        job_id: str,
        worker_id: str,
        items_processed: int,
        items_total: Optional[int] = None,
        persist: bool = True,
    ) -> bool:
        """Record progress for a running job owned by ``worker_id``.

        Pass ``persist=False`` from inside an open storage transaction; the
        progress then reaches storage with the next persisted change.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.worker_id != worker_id or job.state != JobState.RUNNING:
                return False
            job.items_processed = items_processed
            if items_total is not None:
                job.items_total = items_total
            job.revision += 1
            snapshot = job.copy()

        if persist:
            await self._persist(snapshot)
        return True

    async def release_slot(self, worker_id: str, job_id: str, result: SlotResult) -> Optional[Job]:
        """Finish the worker's current job and free the slot.

        Releases for jobs the worker no longer owns (after a heartbeat
        timeout, for instance) are ignored and return None.
        """
        if result.state not in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED):
            raise JobStateError(
                f"Cannot release a slot with state {result.state.value}",
                target_state=result.state.value,
            )

        async with self._lock:
            slot = self._slots.get(worker_id)
            job = self._jobs.get(job_id)
            if (
                slot is None or slot.current_job_id != job_id
                or job is None or job.state not in (JobState.CLAIMED, JobState.RUNNING)
            ):
                self.logger.warning(f"Ignoring stale release of job {job_id} by {worker_id}")
                return None

            now = self.clock()
            if result.items_processed is not None:
                job.items_processed = result.items_processed
            if result.items_total is not None:
                job.items_total = result.items_total

            if result.state == JobState.FAILED:
                job.error = error_payload(result.error) if result.error else None
                slot.jobs_failed += 1
            elif result.state == JobState.SUCCEEDED:
                slot.jobs_completed += 1
            job.transition(result.state, now)

            slot.current_job_id = None
            slot.last_heartbeat = now
            if slot.status == WorkerStatus.BUSY:
                slot.status = WorkerStatus.IDLE
            self._cancel_requested.discard(job_id)
            if result.state != JobState.FAILED:
                self._jobs.pop(job_id, None)
            self._update_gauges()
            snapshot = job.copy()

        # Failed attempts are written once the retry policy picks Queued or Failed
        if result.state != JobState.FAILED:
            await self._persist(snapshot)

        if result.state == JobState.SUCCEEDED:
            self.metrics.increment_counter("jobs.succeeded")
            self._event(
                EventLevel.INFO, "worker",
                f"Job succeeded with {snapshot.items_processed} records",
                snapshot, items=snapshot.items_processed,
            )
        elif result.state == JobState.CANCELLED:
            self.metrics.increment_counter("jobs.cancelled")
            self._event(EventLevel.INFO, "worker", "Job cancelled", snapshot)
        else:
            await self._report_failure(snapshot, result.error)
        return snapshot

    async def _report_failure(self, job: Job, error: Optional[BaseException]) -> None:
        if self.on_failure is not None:
            await self.on_failure(job, error or RuntimeError("unknown failure"))
        else:
            await self.finalize(job.id)
            self.metrics.increment_counter("jobs.failed")
            self._event(EventLevel.ERROR, "dispatcher", f"Job failed: {job.error}", job)

    # ---------------------------------------------- #
    # Failure follow-up, used by the retry policy
    async def schedule_retry(self, job_id: str, ready_at: datetime) -> Job:
        """Failed -> Queued with the next attempt number, claimable from ``ready_at``.

        This is the only write for the failed attempt, so storage never holds
        a retryable job as Failed.

        The job is not made claimable here; call ``enqueue`` once the delay
        has elapsed.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}", resource_type="job", resource_id=job_id)
            job.transition(JobState.QUEUED, self.clock())
            job.attempt += 1
            job.next_attempt_at = ready_at
            self._update_gauges()
            snapshot = job.copy()

        await self._persist(snapshot)
        return snapshot

    async def finalize(self, job_id: str) -> Optional[Job]:
        """Forget a terminally failed job and store its final state."""
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            self._cancel_requested.discard(job_id)
            snapshot = job.copy() if job else None

        if snapshot is not None:
            await self._persist(snapshot)
        return snapshot

    # ---------------------------------------------- #
    # Liveness
    async def heartbeat(self, worker_id: str) -> bool:
        """Renew a slot's heartbeat. False means the slot was declared offline."""
        async with self._lock:
            slot = self._slots.get(worker_id)
            if slot is None or slot.status == WorkerStatus.OFFLINE:
                return False
            slot.last_heartbeat = self.clock()
            return True

    async def check_heartbeats(self, now: Optional[datetime] = None) -> List[str]:
        """Declare busy slots with stale heartbeats offline and fail their jobs.

        Returns:
            Ids of the slots that went offline
        """
        now = now or self.clock()
        limit = timedelta(seconds=self.heartbeat_timeout)
        lost: List[Tuple[str, Job, WorkerTimeout]] = []

        async with self._lock:
            for slot in self._slots.values():
                if slot.status != WorkerStatus.BUSY or now - slot.last_heartbeat <= limit:
                    continue
                job = self._jobs.get(slot.current_job_id or "")
                slot.status = WorkerStatus.OFFLINE
                slot.current_job_id = None
                if job is None or job.state not in (JobState.CLAIMED, JobState.RUNNING):
                    continue

                error = WorkerTimeout(
                    f"Worker {slot.id} missed heartbeats for more than {self.heartbeat_timeout:g}s",
                    worker_id=slot.id,
                    timeout=self.heartbeat_timeout,
                )
                job.error = error.to_dict()
                job.transition(JobState.FAILED, now)
                slot.jobs_failed += 1
                self._cancel_requested.discard(job.id)
                lost.append((slot.id, job.copy(), error))
            self._update_gauges()

        for worker_id, job, error in lost:
            self.metrics.increment_counter("workers.timeouts")
            self._event(
                EventLevel.WARNING, "workers",
                f"Worker {worker_id} heartbeat lost; marked offline",
                job, worker_id=worker_id,
            )
            await self._report_failure(job, error)
        return [worker_id for worker_id, _, _ in lost]

    # ---------------------------------------------- #
    # Cancellation
    async def cancel(self, job_id: str) -> Tuple[Job, bool]:
        """Cancel a live job.

        Queued jobs are cancelled immediately. Claimed and running jobs get a
        cooperative cancellation request that the executing worker honours
        at its next step boundary.

        Returns:
            Tuple of (job copy, True if cancellation is pending on a worker)

        Raises:
            NotFoundError: If the dispatcher does not know the job
            JobStateError: If the job cannot be cancelled in its state
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job not active: {job_id}", resource_type="job", resource_id=job_id)

            if job.state == JobState.QUEUED:
                job.transition(JobState.CANCELLED, self.clock())
                self._in_heap.discard(job_id)
                self._jobs.pop(job_id, None)
                self._update_gauges()
                pending = False
            elif job.state in (JobState.CLAIMED, JobState.RUNNING):
                self._cancel_requested.add(job_id)
                pending = True
            else:
                raise JobStateError(
                    f"Job {job_id} cannot be cancelled while {job.state.value}",
                    current_state=job.state.value,
                    target_state=JobState.CANCELLED.value,
                )
            snapshot = job.copy()

        if pending:
            self._event(EventLevel.INFO, "dispatcher", "Cancellation requested", snapshot)
            if self.on_cancel_requested is not None:
                self.on_cancel_requested(job_id)
        else:
            self.metrics.increment_counter("jobs.cancelled")
            self._event(EventLevel.INFO, "dispatcher", "Job cancelled before it started", snapshot)
            await self._persist(snapshot)
        return snapshot, pending

    async def cancel_plugin_jobs(self, plugin_id: str) -> int:
        """Cancel every live job of a plugin. Returns how many were affected."""
        async with self._lock:
            job_ids = [job.id for job in self._jobs.values() if job.plugin_id == plugin_id]
        count = 0
        for job_id in job_ids:
            try:
                await self.cancel(job_id)
                count += 1
            except (NotFoundError, JobStateError):
                continue
        return count

    # ---------------------------------------------- #
    # Slots
    async def add_slot(self, worker_id: Optional[str] = None) -> WorkerSlot:
        async with self._lock:
            if worker_id is None:
                worker_id = f"worker-{next(self._slot_ids)}"
                while worker_id in self._slots:
                    worker_id = f"worker-{next(self._slot_ids)}"
            elif worker_id in self._slots and self._slots[worker_id].status != WorkerStatus.OFFLINE:
                raise ValidationError(f"Worker already exists: {worker_id}", field="worker_id")
            now = self.clock()
            slot = WorkerSlot(id=worker_id, last_heartbeat=now, started_at=now)
            self._slots[worker_id] = slot
            self._update_gauges()
            return slot

    async def drain_slot(self, worker_id: Optional[str] = None) -> Optional[str]:
        """Mark an idle slot as draining. Busy slots are never drained.

        Args:
            worker_id: Slot to drain; any idle slot when omitted

        Returns:
            Id of the drained slot, or None if no idle slot qualified
        """
        async with self._lock:
            candidates = [self._slots[worker_id]] if worker_id in self._slots else []
            if worker_id is None:
                candidates = sorted(
                    (s for s in self._slots.values() if s.status == WorkerStatus.IDLE),
                    key=lambda s: s.started_at,
                    reverse=True,
                )
            for slot in candidates:
                if slot.status == WorkerStatus.IDLE:
                    slot.status = WorkerStatus.DRAINING
                    self._update_gauges()
                    return slot.id
            return None

    async def remove_slot(self, worker_id: str) -> bool:
        """Remove a slot that is not running a job."""
        async with self._lock:
            slot = self._slots.get(worker_id)
            if slot is None or slot.status == WorkerStatus.BUSY:
                return False
            del self._slots[worker_id]
            self._update_gauges()
            return True

    async def slot_status(self, worker_id: str) -> Optional[WorkerStatus]:
        async with self._lock:
            slot = self._slots.get(worker_id)
            return slot.status if slot else None

    # ---------------------------------------------- #
    # Reads
    async def get_job(self, job_id: str) -> Optional[Job]:
        """Live copy of a non-terminal job."""
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    async def live_jobs(self) -> List[Job]:
        async with self._lock:
            return [job.copy() for job in self._jobs.values()]

    async def snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Slot table and queue view for the workers panel."""
        now = now or self.clock()
        async with self._lock:
            slots = [slot.snapshot(now) for slot in sorted(self._slots.values(), key=lambda s: s.started_at)]
            by_state: Dict[str, int] = {}
            for job in self._jobs.values():
                by_state[job.state.value] = by_state.get(job.state.value, 0) + 1
            return {
                "workers": slots,
                "queue_depth": len(self._in_heap),
                "waiting_retry": sum(
                    1 for job in self._jobs.values()
                    if job.state == JobState.QUEUED and job.id not in self._in_heap
                ),
                "live_jobs": by_state,
                "heartbeat_timeout": self.heartbeat_timeout,
            }

    async def close(self) -> None:
        """Wake every waiter; no further work is handed out after this."""
        async with self._lock:
            self._closed = True
            self._work_available.notify_all()
