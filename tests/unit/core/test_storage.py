"""Tests for SQLite-backed storage."""

from datetime import datetime, timedelta

import pytest

from scrapeboard.core.storage import StorageManager
from scrapeboard.models.job import Job, JobPriority, JobState
from scrapeboard.models.plugin import Plugin
from scrapeboard.models.record import ExtractedRecord

T0 = datetime(2025, 1, 6, 12, 0, 0)


def make_plugin(plugin_id="p1", **overrides):
    data = {
        "id": plugin_id,
        "name": "Catalog",
        "target_url": "https://shop.example.com/catalog",
        "schedule": "5m",
        "fields": [{"name": "heading", "selector": "h1"}],
        "created_at": T0,
        "updated_at": T0,
    }
    data.update(overrides)
    return Plugin(**data)


def make_records(job_id, count, plugin_id="p1", extracted_at=T0):
    return [
        ExtractedRecord(job_id=job_id, plugin_id=plugin_id, fields={"n": i}, extracted_at=extracted_at, index=i)
        for i in range(count)
    ]


class TestPlugins:

    @pytest.mark.asyncio
    async def test_save_load_and_replace(self, storage):
        await storage.save_plugin(make_plugin())
        await storage.save_plugin(make_plugin("p2", created_at=T0 + timedelta(seconds=1)))
        await storage.save_plugin(make_plugin(name="Renamed", enabled=True))

        plugins = await storage.load_plugins()

        assert [plugin.id for plugin in plugins] == ["p1", "p2"]
        assert plugins[0].name == "Renamed"
        assert plugins[0].enabled is True
        assert plugins[0].fields[0].selector == "h1"

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        await storage.save_plugin(make_plugin())

        assert await storage.delete_plugin("p1") is True
        assert await storage.delete_plugin("p1") is False
        assert await storage.load_plugins() == []


class TestJobs:

    @pytest.mark.asyncio
    async def test_round_trip(self, storage):
        job = Job(plugin_id="p1", priority=JobPriority.HIGH, created_at=T0)
        job.transition(JobState.CLAIMED, T0)
        job.worker_id = "worker-1"
        job.error = {"code": "FETCH_ERROR"}

        assert await storage.save_job(job) is True
        loaded = await storage.get_job(job.id)

        assert loaded.state == JobState.CLAIMED
        assert loaded.priority == JobPriority.HIGH
        assert loaded.worker_id == "worker-1"
        assert loaded.error == {"code": "FETCH_ERROR"}
        assert loaded.revision == 1
        assert await storage.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_stale_revision_is_not_applied(self, storage):
        job = Job(plugin_id="p1", created_at=T0)
        stale = job.copy()
        job.transition(JobState.CLAIMED, T0)
        job.transition(JobState.RUNNING, T0)
        await storage.save_job(job)

        assert await storage.save_job(stale) is False
        assert (await storage.get_job(job.id)).state == JobState.RUNNING

    @pytest.mark.asyncio
    async def test_list_jobs_pages_newest_first(self, storage):
        for i in range(5):
            await storage.save_job(Job(plugin_id="p1" if i % 2 else "p2", id=f"job_{i}",
                                       created_at=T0 + timedelta(minutes=i)))

        page, total = await storage.list_jobs(limit=2, offset=1)
        assert total == 5
        assert [job.id for job in page] == ["job_3", "job_2"]

        p1_jobs, p1_total = await storage.list_jobs(plugin_id="p1")
        assert p1_total == 2
        assert [job.id for job in p1_jobs] == ["job_3", "job_1"]

        _, running = await storage.list_jobs(state=JobState.RUNNING)
        assert running == 0

    @pytest.mark.asyncio
    async def test_count_jobs_by_state(self, storage):
        await storage.save_job(Job(plugin_id="p1"))
        await storage.save_job(Job(plugin_id="p1"))
        await storage.save_job(Job(plugin_id="p1", state=JobState.FAILED))

        assert await storage.count_jobs_by_state() == {"queued": 2, "failed": 1}

    @pytest.mark.asyncio
    async def test_recover_interrupted_jobs(self, storage):
        running = Job(plugin_id="p1", state=JobState.RUNNING, worker_id="worker-1", started_at=T0,
                      items_processed=3, revision=2)
        done = Job(plugin_id="p1", state=JobState.SUCCEEDED, revision=3)
        await storage.save_job(running)
        await storage.save_job(done)

        recovered = await storage.recover_interrupted_jobs(T0)

        assert [job.id for job in recovered] == [running.id]
        job = recovered[0]
        assert job.state == JobState.QUEUED
        assert job.worker_id is None
        assert job.items_processed == 0
        assert job.revision == 3
        assert (await storage.get_job(done.id)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_load_queued_jobs_in_claim_order(self, storage):
        await storage.save_job(Job(plugin_id="p1", id="old", created_at=T0))
        await storage.save_job(Job(plugin_id="p1", id="new", created_at=T0 + timedelta(minutes=1)))
        await storage.save_job(Job(plugin_id="p1", id="urgent", priority=JobPriority.HIGH,
                                   created_at=T0 + timedelta(minutes=2)))
        await storage.save_job(Job(plugin_id="p1", id="done", state=JobState.FAILED))

        assert [job.id for job in await storage.load_queued_jobs()] == ["urgent", "old", "new"]


class TestRecords:

    @pytest.mark.asyncio
    async def test_save_records_reports_batches(self, storage):
        progress = []

        async def on_batch(processed, total):
            progress.append((processed, total))

        saved = await storage.save_records(make_records("j1", 5), on_batch=on_batch)

        assert saved == 5
        # record_batch_size is 2 in the test configuration
        assert progress == [(2, 5), (4, 5), (5, 5)]
        assert await storage.count_records("p1") == 5

    @pytest.mark.asyncio
    async def test_save_records_is_atomic(self, storage):
        async def on_batch(processed, total):
            if processed >= 4:
                raise RuntimeError("stop")

        with pytest.raises(RuntimeError):
            await storage.save_records(make_records("j1", 5), on_batch=on_batch)

        assert await storage.count_records() == 0

    @pytest.mark.asyncio
    async def test_save_no_records(self, storage):
        assert await storage.save_records([]) == 0

    @pytest.mark.asyncio
    async def test_list_records_filters(self, storage):
        await storage.save_records(make_records("j1", 2, extracted_at=T0))
        await storage.save_records(make_records("j2", 3, extracted_at=T0 + timedelta(minutes=5)))
        await storage.save_records(make_records("j3", 1, plugin_id="p2"))

        everything = await storage.list_records("p1")
        assert [record.job_id for record in everything] == ["j1", "j1", "j2", "j2", "j2"]
        assert everything[1].index == 1
        assert everything[1].fields == {"n": 1}

        recent = await storage.list_records("p1", since=T0)
        assert {record.job_id for record in recent} == {"j2"}

        assert len(await storage.list_records("p1", job_id="j1")) == 2
        assert len(await storage.list_records("p1", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_storage_stats(self, storage):
        await storage.save_plugin(make_plugin())
        await storage.save_job(Job(plugin_id="p1"))
        await storage.save_records(make_records("j1", 3))

        stats = await storage.get_storage_stats()

        assert stats == {"database_path": ":memory:", "plugins": 1, "jobs": 1, "records": 3}


@pytest.mark.asyncio
async def test_file_database_survives_reopen(config_manager, unique_db_path):
    first = StorageManager(str(unique_db_path), config_manager)
    await first.initialize()
    await first.save_plugin(make_plugin())
    await first.save_job(Job(plugin_id="p1", id="job_keep"))
    await first.cleanup()

    second = StorageManager(str(unique_db_path), config_manager)
    await second.initialize()
    try:
        assert [plugin.id for plugin in await second.load_plugins()] == ["p1"]
        assert (await second.get_job("job_keep")).state == JobState.QUEUED
    finally:
        await second.cleanup()
