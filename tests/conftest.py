"""Pytest configuration and shared fixtures."""

import asyncio
import tempfile
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from scrapeboard.core.dispatcher import Dispatcher
from scrapeboard.core.events import EventLog
from scrapeboard.core.extraction import ExtractionEngine
from scrapeboard.core.registry import PluginRegistry
from scrapeboard.core.storage import StorageManager
from scrapeboard.foundation.config import ConfigManager, set_config_manager


PRODUCT_PAGE = """
<html>
  <head><title>Catalog</title></head>
  <body>
    <h1>Spring Catalog</h1>
    <ul class="products">
      <li class="product"><a href="/p/1">Kettle</a><span class="price">$24.50</span><em>In stock</em></li>
      <li class="product"><a href="/p/2">Toaster</a><span class="price">$1,299.00</span><em>Out of stock</em></li>
      <li class="product"><a href="/p/3">Blender</a></li>
    </ul>
  </body>
</html>
"""

PRODUCT_JSON = """
{
  "data": {
    "total": 2,
    "items": [
      {"title": "Kettle", "price": "24.50", "tags": ["kitchen", "steel"], "first name": "Ada"},
      {"title": "Toaster", "price": 1299, "tags": [], "stock": {"available": true}}
    ]
  }
}
"""


class ManualClock:
    """Clock callable that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 6, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeFetcher:
    """Stands in for the aiohttp fetcher.

    Responses are scripted per URL as a list consumed in order; the last
    entry repeats. An entry is a body string, an exception to raise, or
    ``FakeFetcher.HANG`` to block until cancelled.
    """

    HANG = object()

    def __init__(self):
        self.scripts: Dict[str, List[Any]] = {}
        self.default: Any = PRODUCT_PAGE
        self.calls: List[str] = []
        self.closed = False

    def respond(self, url: str, *responses: Any) -> None:
        self.scripts[url] = list(responses)

    async def fetch(self, url: str, headers=None, timeout=None) -> str:
        self.calls.append(url)
        script = self.scripts.get(url)
        if script:
            response = script.pop(0) if len(script) > 1 else script[0]
        else:
            response = self.default

        if response is FakeFetcher.HANG:
            await asyncio.Event().wait()
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def unique_db_path(temp_dir):
    """Generate unique database path per test to prevent conflicts."""
    return temp_dir / f"test_{uuid.uuid4().hex[:8]}.db"


@pytest.fixture(autouse=True)
def config_manager():
    """Install a fast, in-memory configuration for every test."""
    config_manager = ConfigManager()
    config_manager.merge_config({
        "global": {"log_level": "DEBUG", "log_file": None},
        "fetch": {"timeout": 5.0},
        "scheduler": {"max_attempts": 3, "backoff_base": 0.01, "backoff_max": 1.0, "max_sleep": 0.2},
        "workers": {
            "pool_size": 2,
            "heartbeat_interval": 0.05,
            "heartbeat_timeout": 30.0,
            "idle_wait": 0.05,
            "monitor_interval": 0.05,
            "scale_window": 3,
        },
        "storage": {"database_path": ":memory:", "record_batch_size": 2},
        "events": {"buffer_size": 500, "subscriber_queue_size": 100, "drop_summary_every": 100},
    })
    set_config_manager(config_manager)
    yield config_manager
    set_config_manager(None)


@pytest.fixture
def cli_runner():
    """Create a Click CLI runner for testing."""
    from click.testing import CliRunner

    class TestingCliRunner(CliRunner):
        def invoke(self, cli, args=None, **kwargs):
            kwargs.setdefault('catch_exceptions', False)
            if kwargs.get('obj') is None:
                kwargs['obj'] = {}
            return super().invoke(cli, args, **kwargs)

    return TestingCliRunner()


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def product_page():
    return PRODUCT_PAGE


@pytest.fixture
def product_json():
    return PRODUCT_JSON


@pytest.fixture
def event_log(manual_clock):
    return EventLog(clock=manual_clock)


@pytest.fixture
def extraction(event_log):
    return ExtractionEngine(event_log)


@pytest.fixture
async def storage(config_manager):
    """In-memory storage with tables created."""
    storage = StorageManager(":memory:", config_manager)
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.cleanup()


@pytest.fixture
def registry(storage, event_log, manual_clock):
    return PluginRegistry(storage, event_log, manual_clock)


@pytest.fixture
def dispatcher(event_log, manual_clock):
    """Dispatcher without storage; tests that need persistence pass their own."""
    return Dispatcher(event_log=event_log, clock=manual_clock, heartbeat_timeout=30.0)


@pytest.fixture
def make_definition():
    """Factory for valid HTML plugin definitions."""

    def _make(**overrides) -> Dict[str, Any]:
        definition: Dict[str, Any] = {
            "name": "Catalog",
            "target_url": "https://shop.example.com/catalog",
            "source_type": "html",
            "schedule": "5m",
            "fields": [
                {"name": "heading", "selector": "h1"},
                {"name": "title", "selector": "title"},
            ],
        }
        definition.update(overrides)
        return definition

    return _make


@pytest.fixture
def wait_until():
    """Poll a sync or async predicate until it is truthy."""

    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() >= deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait
