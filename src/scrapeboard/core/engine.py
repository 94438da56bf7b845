"""Engine facade: wires the components together and serves the API operations."""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from ..foundation.clock import Clock, utcnow
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import JobStateError, NotFoundError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.common import HealthCheck
from ..models.events import EventFilter, EventLevel
from ..models.job import Job, JobState
from ..models.plugin import Plugin, PluginDefinition, SourceType
from ..version import __version__
from .dispatcher import Dispatcher
from .events import EventLog, Subscription
from .extraction import ExtractionEngine
from .fetcher import Fetcher
from .registry import PluginRegistry
from .scheduler import JobScheduler
from .storage import StorageManager
from .workers import WorkerPool

DefinitionInput = Union[PluginDefinition, Mapping[str, Any]]


class Engine:
    """Owns one instance of every component.

    ``initialize`` prepares storage and rebuilds in-memory state after a
    restart; ``start`` launches the scheduler loop and the worker pool.
    Nothing here waits for a job to finish.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        database_path: Optional[str] = None,
        clock: Clock = utcnow,
        fetcher: Optional[Fetcher] = None,
        storage: Optional[StorageManager] = None,
        event_log: Optional[EventLog] = None,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.clock = clock

        self.storage = storage or StorageManager(database_path, self.config_manager)
        self.event_log = event_log or EventLog(clock=clock)
        self.extraction = ExtractionEngine(self.event_log)
        self.registry = PluginRegistry(self.storage, self.event_log, clock)
        self.dispatcher = Dispatcher(self.storage, self.event_log, clock)
        self.scheduler = JobScheduler(self.registry, self.dispatcher, self.event_log, clock)
        self.fetcher = fetcher or Fetcher()
        self.pool = WorkerPool(
            self.dispatcher,
            self.registry,
            self.storage,
            self.extraction,
            self.fetcher,
            event_log=self.event_log,
            clock=clock,
        )

        self.started_at: Optional[datetime] = None
        self._initialized = False

    # ==================== LIFECYCLE ====================

    async def initialize(self) -> None:
        """Create tables, load plugins, recover interrupted jobs and requeue pending ones."""
        if self._initialized:
            return
        await self.storage.initialize()
        await self.registry.load()

        now = self.clock()
        recovered = await self.storage.recover_interrupted_jobs(now)
        if recovered:
            self.event_log.emit(
                EventLevel.WARNING,
                "engine",
                f"Recovered {len(recovered)} jobs interrupted by a previous shutdown",
                detail={"job_ids": [job.id for job in recovered]},
            )

        queued = await self.storage.load_queued_jobs()
        for job in queued:
            delayed = job.next_attempt_at is not None and job.next_attempt_at > now
            await self.dispatcher.submit(job, persist=False, ready=not delayed)
            if delayed:
                self.scheduler.track_retry(job.id, job.next_attempt_at)
        if queued:
            self.logger.info(f"Requeued {len(queued)} pending jobs")

        self._initialized = True

    async def start(self) -> None:
        await self.initialize()
        self.scheduler.start()
        await self.pool.start()
        self.started_at = self.clock()
        self.event_log.emit(EventLevel.INFO, "engine", f"Scrapeboard {__version__} started")

    async def stop(self) -> None:
        """Stop scheduling and workers, then release connections."""
        await self.scheduler.stop()
        await self.pool.stop()
        self.scheduler.close()
        await self.fetcher.close()
        await self.storage.cleanup()
        self.started_at = None
        self._initialized = False
        self.logger.info("Engine stopped")

    # ==================== PLUGINS ====================

    def plugin_view(self, plugin: Plugin) -> Dict[str, Any]:
        """Plugin dict plus its next planned fire time."""
        data = plugin.to_dict()
        next_fire_at = self.scheduler.next_fire_times().get(plugin.id)
        data["next_fire_at"] = next_fire_at.isoformat() if next_fire_at else None
        return data

    async def create_plugin(self, definition: DefinitionInput) -> Plugin:
        return await self.registry.create(definition)

    async def update_plugin(self, plugin_id: str, definition: DefinitionInput) -> Plugin:
        return await self.registry.update(plugin_id, definition)

    async def delete_plugin(self, plugin_id: str) -> Plugin:
        """Delete a plugin and cancel its live jobs. History and records are kept."""
        self.registry.get(plugin_id)
        cancelled = await self.dispatcher.cancel_plugin_jobs(plugin_id)
        if cancelled:
            self.logger.info(f"Cancelled {cancelled} live jobs of deleted plugin {plugin_id}")
        return await self.registry.delete(plugin_id)

    def get_plugin(self, plugin_id: str) -> Plugin:
        return self.registry.get(plugin_id)

    def list_plugins(
        self,
        enabled: Optional[bool] = None,
        source_type: Optional[SourceType] = None,
        search: Optional[str] = None,
    ) -> List[Plugin]:
        return self.registry.list(enabled=enabled, source_type=source_type, search=search)

    async def set_plugin_enabled(self, plugin_id: str, enabled: bool) -> Plugin:
        return await self.registry.set_enabled(plugin_id, enabled)

    async def run_plugin(self, plugin_id: str) -> Job:
        return await self.scheduler.run_now(plugin_id)

    async def list_records(
        self,
        plugin_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
        job_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Records of a plugin. Records of deleted plugins stay readable.

        Raises:
            NotFoundError: If the plugin is unknown and has no stored records
        """
        records = await self.storage.list_records(plugin_id, since=since, limit=limit, job_id=job_id)
        if not records and plugin_id not in self.registry:
            raise NotFoundError(f"Plugin not found: {plugin_id}", resource_type="plugin", resource_id=plugin_id)
        return [record.to_dict() for record in records]

    async def preview_plugin(self, definition: DefinitionInput, content: Optional[str] = None) -> Dict[str, Any]:
        """Run extraction for a draft definition without persisting anything.

        The target URL is fetched unless ``content`` is supplied.
        """
        draft = self.registry.validate(definition)
        fetched = content is None
        if fetched:
            content = await self.fetcher.fetch(
                draft.target_url, headers=draft.headers, timeout=draft.fetch_timeout
            )
        rows, missing = await self.extraction.extract_fields_async(
            content, draft.fields, draft.source_type, draft.item_selector
        )
        return {
            "records": rows,
            "missing": missing,
            "items_total": len(rows),
            "empty": not rows or all(value is None for row in rows for value in row.values()),
            "source": "fetched" if fetched else "provided",
        }

    # ==================== JOBS ====================

    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        plugin_id: Optional[str] = None,
        page: int = 1,
        size: int = 50,
    ) -> Dict[str, Any]:
        """A page of jobs, newest first, with live state where a job is in flight."""
        jobs, total = await self.storage.list_jobs(
            state=state, plugin_id=plugin_id, limit=size, offset=(page - 1) * size
        )
        live = {job.id: job for job in await self.dispatcher.live_jobs()}
        items = [live.get(job.id, job).to_dict() for job in jobs]
        return {"items": items, "total": total, "page": page, "size": size}

    async def get_job(self, job_id: str) -> Job:
        job = await self.dispatcher.get_job(job_id)
        if job is None:
            job = await self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", resource_type="job", resource_id=job_id)
        return job

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """Cancel a job.

        Returns:
            Dict with the job and whether cancellation is still pending on a worker

        Raises:
            NotFoundError: If the job does not exist
            JobStateError: If the job already reached a terminal state
        """
        try:
            job, pending = await self.dispatcher.cancel(job_id)
        except NotFoundError:
            stored = await self.storage.get_job(job_id)
            if stored is None:
                raise
            raise JobStateError(
                f"Job {job_id} is already {stored.state.value}",
                current_state=stored.state.value,
                target_state=JobState.CANCELLED.value,
            )
        return {"job": job.to_dict(), "pending": pending}

    # ==================== WORKERS, LOGS, STATS ====================

    async def workers(self) -> Dict[str, Any]:
        snapshot = await self.pool.snapshot()
        snapshot["system"] = self.metrics.get_system_metrics()
        return snapshot

    def query_logs(self, event_filter: Optional[EventFilter] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.event_log.query(event_filter, limit)]

    def export_logs(self, event_filter: Optional[EventFilter] = None, fmt: str = "json") -> str:
        return self.event_log.export(event_filter, fmt)

    def subscribe_logs(self, event_filter: Optional[EventFilter] = None, replay: bool = True) -> Subscription:
        return self.event_log.subscribe(event_filter, replay=replay)

    async def statistics(self) -> Dict[str, Any]:
        """Numbers for the overview panel."""
        plugins = self.registry.list()
        pool = await self.pool.snapshot()
        storage = await self.storage.get_storage_stats()
        jobs_by_state = await self.storage.count_jobs_by_state()
        next_fire = {
            plugin_id: fire_at.isoformat() if fire_at else None
            for plugin_id, fire_at in self.scheduler.next_fire_times().items()
        }
        return {
            "plugins": {
                "total": len(plugins),
                "enabled": sum(1 for plugin in plugins if plugin.enabled),
                "next_fire_at": next_fire,
            },
            "jobs": {
                "by_state": jobs_by_state,
                "live": pool["live_jobs"],
                "queue_depth": pool["queue_depth"],
                "waiting_retry": pool["waiting_retry"],
            },
            "workers": pool["pool"],
            "records": storage["records"],
            "events": self.event_log.stats(),
            "business": self.metrics.get_business_metrics(),
            "uptime": self.uptime,
        }

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.export_metrics()

    @property
    def uptime(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.clock() - self.started_at).total_seconds()

    def health(self) -> HealthCheck:
        scheduler_running = self.scheduler.is_running
        status = "healthy" if self.pool.is_running and scheduler_running else "degraded"
        return HealthCheck(
            status=status,
            version=__version__,
            uptime=self.uptime,
            components={
                "scheduler": {"running": scheduler_running},
                "workers": {"running": self.pool.is_running},
                "events": {"last_seq": self.event_log.last_seq, "dropped": self.event_log.dropped},
            },
        )
