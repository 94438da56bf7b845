"""Per-job work unit: fetch, extract, persist."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from ..foundation.clock import Clock, utcnow
from ..foundation.config import get_config_manager
from ..foundation.errors import (
    ErrorContext, FetchError, JobCancelled, JobStateError, ScrapeboardError, handle_error
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.job import Job, JobState
from ..models.plugin import Plugin
from .dispatcher import SlotResult


@dataclass
class ExecutionResult:
    """How a job run ended."""
    state: JobState
    error: Optional[BaseException] = None
    items_processed: int = 0
    items_total: Optional[int] = None

    def to_slot_result(self) -> SlotResult:
        return SlotResult(
            state=self.state,
            error=self.error,
            items_processed=self.items_processed,
            items_total=self.items_total,
        )


class JobExecutionContext:
    """Runs one claimed job inside a worker slot.

    Steps run in order (fetch, extract, persist) with a cooperative
    cancellation check before each. An in-flight fetch is aborted by
    cancelling its task. Records are written in a single transaction, so a
    run stores either all of its records or none.
    """

    def __init__(
        self,
        job: Job,
        plugin: Plugin,
        worker_id: str,
        dispatcher,
        storage,
        extraction,
        fetcher,
        clock: Clock = utcnow,
        fetch_timeout: Optional[float] = None,
    ):
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.job = job
        self.plugin = plugin
        self.worker_id = worker_id
        self.dispatcher = dispatcher
        self.storage = storage
        self.extraction = extraction
        self.fetcher = fetcher
        self.clock = clock
        self.fetch_timeout = float(
            plugin.fetch_timeout or fetch_timeout or get_config_manager().get_setting("fetch.timeout", 30.0)
        )

        self._cancelled = asyncio.Event()
        self._fetch_task: Optional[asyncio.Task] = None
        self.items_processed = 0
        self.items_total: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request cancellation; aborts an in-flight fetch."""
        self._cancelled.set()
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()

    def _check_cancelled(self, step: str) -> None:
        if self._cancelled.is_set():
            raise JobCancelled(f"Job {self.job.id} cancelled before {step}")

    async def run(self) -> ExecutionResult:
        """Execute the job and report how it ended. Never raises for job-level errors."""
        label = f"{self.job.id} ({self.plugin.id}, attempt {self.job.attempt})"
        try:
            with timer("job"):
                self._check_cancelled("start")
                await self.dispatcher.mark_running(self.job.id, self.worker_id)

                self._check_cancelled("fetch")
                content = await self._fetch()
                self.logger.debug(f"Fetched {len(content)} chars for {label}")

                self._check_cancelled("extract")
                with timer("extraction"):
                    outcome = await self.extraction.extract_async(
                        content, self.plugin, self.job.id, self.clock(), attempt=self.job.attempt
                    )
                self.items_total = outcome.items_total
                self.logger.debug(f"Extracted {outcome.items_total} records for {label}")

                self._check_cancelled("persist")
                await self.dispatcher.update_progress(self.job.id, self.worker_id, 0, self.items_total)
                self.items_processed = await self.storage.save_records(outcome.records, on_batch=self._on_batch)

            return ExecutionResult(
                state=JobState.SUCCEEDED,
                items_processed=self.items_processed,
                items_total=self.items_total,
            )

        except JobCancelled as e:
            self.logger.info(f"Job {label} cancelled: {e.message}")
            return self._result(JobState.CANCELLED, e)
        except JobStateError as e:
            # The slot lost ownership (timeout or cancellation); the release is ignored.
            self.logger.warning(f"Job {label} no longer owned by {self.worker_id}: {e.message}")
            return self._result(JobState.FAILED, e)
        except ScrapeboardError as e:
            self.logger.info(f"Job {label} failed: {e.message}")
            return self._result(JobState.FAILED, e)
        except Exception as e:
            handle_error(e, ErrorContext(
                operation="job.run",
                url=self.plugin.target_url,
                plugin_id=self.plugin.id,
                job_id=self.job.id,
                worker_id=self.worker_id,
            ))
            return self._result(JobState.FAILED, e)

    def _result(self, state: JobState, error: BaseException) -> ExecutionResult:
        return ExecutionResult(
            state=state,
            error=error,
            items_processed=self.items_processed,
            items_total=self.items_total,
        )

    async def _fetch(self) -> str:
        self._fetch_task = asyncio.ensure_future(
            self.fetcher.fetch(self.plugin.target_url, headers=self.plugin.headers, timeout=self.fetch_timeout)
        )
        try:
            with timer("fetch"):
                return await asyncio.wait_for(self._fetch_task, timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(
                f"Timed out after {self.fetch_timeout:g}s fetching {self.plugin.target_url}",
                url=self.plugin.target_url,
                timed_out=True,
            ) from e
        except asyncio.CancelledError:
            if self._cancelled.is_set():
                raise JobCancelled(f"Job {self.job.id} cancelled during fetch")
            raise
        finally:
            self._fetch_task = None

    async def _on_batch(self, processed: int, total: int) -> None:
        self.items_processed = processed
        await self.dispatcher.update_progress(self.job.id, self.worker_id, processed, total, persist=False)
