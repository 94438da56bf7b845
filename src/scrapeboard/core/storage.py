"""Storage management using SQLite for plugins, job history and extracted records."""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import sqlalchemy.exc
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..database.connection import DatabaseManager
from ..database.models import JobRow, PluginRow, RecordRow
from ..foundation.clock import utcnow
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import ErrorContext, PersistError, handle_error
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.job import Job, JobPriority, JobState, JobTrigger
from ..models.plugin import Plugin
from ..models.record import ExtractedRecord

ProgressCallback = Callable[[int, int], Awaitable[None]]


def _job_to_values(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "plugin_id": job.plugin_id,
        "state": job.state.value,
        "priority": int(job.priority),
        "trigger": job.trigger.value,
        "created_at": job.created_at,
        "updated_at": utcnow(),
        "scheduled_for": job.scheduled_for,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "next_attempt_at": job.next_attempt_at,
        "attempt": job.attempt,
        "max_attempts": job.max_attempts,
        "items_processed": job.items_processed,
        "items_total": job.items_total,
        "error": job.error,
        "worker_id": job.worker_id,
        "revision": job.revision,
    }


def _row_to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        plugin_id=row.plugin_id,
        state=JobState(row.state),
        priority=JobPriority(row.priority),
        trigger=JobTrigger(row.trigger),
        created_at=row.created_at,
        scheduled_for=row.scheduled_for,
        started_at=row.started_at,
        finished_at=row.finished_at,
        next_attempt_at=row.next_attempt_at,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        items_processed=row.items_processed,
        items_total=row.items_total,
        error=row.error,
        worker_id=row.worker_id,
        revision=row.revision,
    )


def _row_to_record(row: RecordRow) -> ExtractedRecord:
    return ExtractedRecord(
        id=row.id,
        job_id=row.job_id,
        plugin_id=row.plugin_id,
        attempt=row.attempt,
        index=row.position,
        fields=row.fields,
        extracted_at=row.extracted_at,
    )


class StorageManager:
    """Durable surface: plugin definitions, job history and extracted records."""

    def __init__(self, database_path: Optional[str] = None, config_manager: Optional[ConfigManager] = None):
        self.logger = get_logger(__name__)
        self.config_manager = config_manager or get_config_manager()
        self.metrics = get_metrics_collector()
        self.db_manager = DatabaseManager(config_manager=self.config_manager, database_path=database_path)
        self.batch_size = max(1, int(self.config_manager.get_setting("storage.record_batch_size", 100)))

    async def initialize(self) -> None:
        """Initialize the storage system."""
        await self.db_manager.initialize()
        self.logger.info("Storage manager initialized successfully")

    async def cleanup(self) -> None:
        """Clean up storage resources."""
        await self.db_manager.close()
        self.logger.info("Storage manager cleaned up successfully")

    def _persist_error(self, operation: str, error: Exception) -> PersistError:
        self.metrics.increment_counter("storage.errors")
        persist_error = PersistError(f"Storage operation '{operation}' failed: {error}", operation=operation)
        handle_error(persist_error, ErrorContext(operation=f"storage.{operation}"))
        return persist_error

    # ==================== PLUGINS ====================

    async def save_plugin(self, plugin: Plugin) -> None:
        """Insert or replace a plugin definition."""
        values = {
            "id": plugin.id,
            "name": plugin.name,
            "source_type": plugin.source_type.value,
            "schedule": plugin.schedule,
            "enabled": plugin.enabled,
            "definition": plugin.to_dict(),
            "created_at": plugin.created_at,
            "updated_at": plugin.updated_at,
        }
        stmt = sqlite_insert(PluginRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PluginRow.id],
            set_={key: stmt.excluded[key] for key in values if key not in ("id", "created_at")},
        )
        try:
            async with self.db_manager.get_session() as session:
                await session.execute(stmt)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("save_plugin", e) from e

    async def delete_plugin(self, plugin_id: str) -> bool:
        """Delete a plugin definition. Job history and records are kept."""
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(delete(PluginRow).where(PluginRow.id == plugin_id))
                return result.rowcount > 0
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("delete_plugin", e) from e

    async def load_plugins(self) -> List[Plugin]:
        """Load all stored plugin definitions."""
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(select(PluginRow).order_by(PluginRow.created_at, PluginRow.id))
                rows = result.scalars().all()
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("load_plugins", e) from e

        plugins = []
        for row in rows:
            try:
                plugins.append(Plugin.model_validate(row.definition))
            except ValueError as e:
                self.logger.error(f"Skipping unreadable plugin {row.id}: {e}")
        return plugins

    # ==================== JOBS ====================

    async def save_job(self, job: Job) -> bool:
        """Write a job if its revision is newer than the stored one.

        Returns:
            True if the row was inserted or updated, False if a newer
            revision was already stored
        """
        values = _job_to_values(job)
        stmt = sqlite_insert(JobRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[JobRow.id],
            set_={key: stmt.excluded[key] for key in values if key not in ("id", "created_at")},
            where=JobRow.revision < stmt.excluded.revision,
        )
        with timer("storage.save_job"):
            try:
                async with self.db_manager.get_session() as session:
                    result = await session.execute(stmt)
                    applied = result.rowcount > 0
            except sqlalchemy.exc.SQLAlchemyError as e:
                raise self._persist_error("save_job", e) from e

        if not applied:
            self.logger.debug(f"Skipped stale write for job {job.id} (revision {job.revision})")
        return applied

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            async with self.db_manager.get_session() as session:
                row = await session.get(JobRow, job_id)
                return _row_to_job(row) if row else None
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("get_job", e) from e

    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        plugin_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Job], int]:
        """List jobs newest first.

        Returns:
            Tuple of (jobs on this page, total matching jobs)
        """
        conditions = []
        if state is not None:
            conditions.append(JobRow.state == state.value)
        if plugin_id is not None:
            conditions.append(JobRow.plugin_id == plugin_id)

        try:
            async with self.db_manager.get_session() as session:
                total = await session.scalar(select(func.count()).select_from(JobRow).where(*conditions))
                result = await session.execute(
                    select(JobRow)
                    .where(*conditions)
                    .order_by(JobRow.created_at.desc(), JobRow.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                return [_row_to_job(row) for row in result.scalars().all()], int(total or 0)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("list_jobs", e) from e

    async def count_jobs_by_state(self) -> Dict[str, int]:
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(select(JobRow.state, func.count()).group_by(JobRow.state))
                return {state: count for state, count in result.all()}
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("count_jobs_by_state", e) from e

    async def recover_interrupted_jobs(self, now: Optional[datetime] = None) -> List[Job]:
        """Sweep jobs left Claimed or Running by a previous process back to Queued."""
        now = now or utcnow()
        interrupted = (JobState.CLAIMED.value, JobState.RUNNING.value)
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(select(JobRow).where(JobRow.state.in_(interrupted)))
                rows = result.scalars().all()
                for row in rows:
                    await session.execute(
                        update(JobRow)
                        .where(JobRow.id == row.id)
                        .values(
                            state=JobState.QUEUED.value,
                            worker_id=None,
                            started_at=None,
                            items_processed=0,
                            items_total=None,
                            revision=row.revision + 1,
                            updated_at=now,
                        )
                    )
                recovered = [row.id for row in rows]
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("recover_interrupted_jobs", e) from e

        jobs = []
        for job_id in recovered:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        if jobs:
            self.logger.warning(f"Recovered {len(jobs)} interrupted jobs back to queued")
        return jobs

    async def load_queued_jobs(self) -> List[Job]:
        """Queued jobs in claim order."""
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(JobRow)
                    .where(JobRow.state == JobState.QUEUED.value)
                    .order_by(JobRow.priority.desc(), JobRow.created_at.asc())
                )
                return [_row_to_job(row) for row in result.scalars().all()]
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("load_queued_jobs", e) from e

    # ==================== RECORDS ====================

    async def save_records(
        self,
        records: Sequence[ExtractedRecord],
        on_batch: Optional[ProgressCallback] = None,
    ) -> int:
        """Persist a run's records in a single transaction.

        Either every record is stored or none is. ``on_batch`` is awaited
        after each flushed batch with (processed, total); it runs inside the
        transaction and must not touch storage itself.

        Raises:
            PersistError: If the transaction fails
        """
        total = len(records)
        if total == 0:
            return 0

        with timer("persist"):
            try:
                async with self.db_manager.get_session() as session:
                    for start in range(0, total, self.batch_size):
                        batch = records[start:start + self.batch_size]
                        session.add_all([
                            RecordRow(
                                job_id=record.job_id,
                                plugin_id=record.plugin_id,
                                attempt=record.attempt,
                                position=record.index,
                                fields=record.fields,
                                extracted_at=record.extracted_at,
                            )
                            for record in batch
                        ])
                        await session.flush()
                        if on_batch is not None:
                            await on_batch(start + len(batch), total)
            except sqlalchemy.exc.SQLAlchemyError as e:
                raise self._persist_error("save_records", e) from e

        self.metrics.increment_counter("records.persisted", total)
        return total

    async def list_records(
        self,
        plugin_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
        job_id: Optional[str] = None,
    ) -> List[ExtractedRecord]:
        """Records for a plugin, oldest first, optionally after ``since``."""
        conditions = [RecordRow.plugin_id == plugin_id]
        if since is not None:
            conditions.append(RecordRow.extracted_at > since)
        if job_id is not None:
            conditions.append(RecordRow.job_id == job_id)

        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(RecordRow)
                    .where(*conditions)
                    .order_by(RecordRow.extracted_at.asc(), RecordRow.id.asc())
                    .limit(limit)
                )
                return [_row_to_record(row) for row in result.scalars().all()]
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("list_records", e) from e

    async def count_records(self, plugin_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(RecordRow)
        if plugin_id is not None:
            stmt = stmt.where(RecordRow.plugin_id == plugin_id)
        try:
            async with self.db_manager.get_session() as session:
                return int(await session.scalar(stmt) or 0)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("count_records", e) from e

    async def get_storage_stats(self) -> Dict[str, Any]:
        """Row counts for the overview panel."""
        try:
            async with self.db_manager.get_session() as session:
                plugins = await session.scalar(select(func.count()).select_from(PluginRow))
                jobs = await session.scalar(select(func.count()).select_from(JobRow))
                records = await session.scalar(select(func.count()).select_from(RecordRow))
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise self._persist_error("get_storage_stats", e) from e

        return {
            "database_path": self.db_manager.database_path,
            "plugins": int(plugins or 0),
            "jobs": int(jobs or 0),
            "records": int(records or 0),
        }
