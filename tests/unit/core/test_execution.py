"""Tests for running a single claimed job."""

import asyncio
from datetime import datetime

import pytest
import sqlalchemy

from scrapeboard.core.execution import JobExecutionContext
from scrapeboard.foundation.errors import (
    ExtractionError, FetchError, JobCancelled, JobStateError, PersistError
)
from scrapeboard.models.job import Job, JobState
from scrapeboard.models.plugin import Plugin

URL = "https://shop.example.com/catalog"


def make_plugin(**overrides):
    now = datetime(2025, 1, 6, 12, 0, 0)
    data = {
        "id": "p1",
        "name": "Catalog",
        "target_url": URL,
        "schedule": "5m",
        "item_selector": "li.product",
        "fields": [
            {"name": "name", "selector": "a"},
            {"name": "price", "selector": ".price", "value_type": "number"},
        ],
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return Plugin(**data)


@pytest.fixture
def run_context(dispatcher, storage, extraction, fake_fetcher, manual_clock):
    """Claim a fresh job for ``plugin`` and wrap it in an execution context."""

    async def _make(plugin=None, fetch_timeout=None, claim=True):
        plugin = plugin or make_plugin()
        slot = await dispatcher.add_slot()
        job = await dispatcher.submit(Job(plugin_id=plugin.id))
        if claim:
            job = await dispatcher.claim_next(slot.id)
        return JobExecutionContext(
            job, plugin, slot.id, dispatcher, storage, extraction, fake_fetcher,
            clock=manual_clock, fetch_timeout=fetch_timeout,
        )

    return _make


class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_fetch_extract_persist(self, run_context, dispatcher, storage, fake_fetcher):
        context = await run_context()

        result = await context.run()

        assert result.state == JobState.SUCCEEDED
        assert result.error is None
        assert (result.items_processed, result.items_total) == (3, 3)
        assert fake_fetcher.calls == [URL]
        records = await storage.list_records("p1")
        assert [record.fields["name"] for record in records] == ["Kettle", "Toaster", "Blender"]
        assert records[1].fields["price"] == 1299.0

        live = await dispatcher.get_job(context.job.id)
        assert live.state == JobState.RUNNING
        assert (live.items_processed, live.items_total) == (3, 3)

        released = await dispatcher.release_slot(context.worker_id, context.job.id, result.to_slot_result())
        assert released.state == JobState.SUCCEEDED
        assert released.items_processed == 3


class TestFailedRun:

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, run_context, fake_fetcher):
        fake_fetcher.respond(URL, fake_fetcher.HANG)
        context = await run_context(make_plugin(fetch_timeout=0.05))

        result = await context.run()

        assert result.state == JobState.FAILED
        assert isinstance(result.error, FetchError)
        assert result.error.timed_out is True
        assert result.error.error_code == "FETCH_TIMEOUT"

    @pytest.mark.asyncio
    async def test_context_timeout_applies_without_plugin_timeout(self, run_context, fake_fetcher):
        fake_fetcher.respond(URL, fake_fetcher.HANG)
        context = await run_context(fetch_timeout=0.05)

        assert context.fetch_timeout == 0.05
        assert (await context.run()).error.timed_out is True

    @pytest.mark.asyncio
    async def test_fetch_error(self, run_context, fake_fetcher, storage):
        fake_fetcher.respond(URL, FetchError("HTTP 500", status_code=500, url=URL))
        context = await run_context()

        result = await context.run()

        assert result.state == JobState.FAILED
        assert result.error.status_code == 500
        assert await storage.count_records() == 0

    @pytest.mark.asyncio
    async def test_extraction_error(self, run_context, fake_fetcher):
        fake_fetcher.respond(URL, "<html>not json</html>")
        plugin = make_plugin(source_type="json", item_selector=None, fields=[{"name": "total", "selector": "total"}])
        context = await run_context(plugin)

        result = await context.run()

        assert result.state == JobState.FAILED
        assert isinstance(result.error, ExtractionError)
        assert result.error.error_code == "INVALID_JSON"

    @pytest.mark.asyncio
    async def test_persist_error_fails_job(self, run_context, storage, monkeypatch):
        async def broken_save(records, on_batch=None):
            raise PersistError("database is locked", operation="save_records")

        monkeypatch.setattr(storage, "save_records", broken_save)
        context = await run_context()

        result = await context.run()

        assert result.state == JobState.FAILED
        assert isinstance(result.error, PersistError)
        assert result.error.error_code == "PERSIST_ERROR"
        assert await storage.count_records() == 0

    @pytest.mark.asyncio
    async def test_failed_transaction_stores_no_records(self, run_context, storage):
        storage.batch_size = 1
        context = await run_context()
        batches = []

        async def failing_batch(processed, total):
            batches.append(processed)
            if processed == 2:
                raise sqlalchemy.exc.OperationalError("INSERT INTO records", {}, Exception("disk I/O error"))

        context._on_batch = failing_batch

        result = await context.run()

        assert batches == [1, 2]
        assert result.state == JobState.FAILED
        assert result.error.error_code == "PERSIST_ERROR"
        assert await storage.count_records() == 0

    @pytest.mark.asyncio
    async def test_unexpected_error(self, run_context, fake_fetcher):
        fake_fetcher.respond(URL, RuntimeError("socket exploded"))
        context = await run_context()

        result = await context.run()

        assert result.state == JobState.FAILED
        assert isinstance(result.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_job_no_longer_owned(self, run_context, fake_fetcher):
        context = await run_context(claim=False)

        result = await context.run()

        assert result.state == JobState.FAILED
        assert isinstance(result.error, JobStateError)
        assert fake_fetcher.calls == []


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, run_context, fake_fetcher, dispatcher):
        context = await run_context()
        context.cancel()

        result = await context.run()

        assert context.cancelled
        assert result.state == JobState.CANCELLED
        assert isinstance(result.error, JobCancelled)
        assert fake_fetcher.calls == []
        released = await dispatcher.release_slot(context.worker_id, context.job.id, result.to_slot_result())
        assert released.state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_fetch(self, run_context, fake_fetcher, storage, wait_until):
        fake_fetcher.respond(URL, fake_fetcher.HANG)
        context = await run_context()

        task = asyncio.create_task(context.run())
        await wait_until(lambda: fake_fetcher.calls)
        context.cancel()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.state == JobState.CANCELLED
        assert await storage.count_records() == 0
