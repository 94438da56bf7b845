"""Tests for commands that talk to a running server."""

import pytest

from scrapeboard.cli.client import ApiError
from scrapeboard.cli.main import cli


class FakeApiClient:
    """Stands in for ApiClient; answers from a (method, path) table."""

    responses = {}
    requests = []

    def __init__(self, base_url=None):
        self.base_url = base_url

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def _answer(self, method, path, params=None, body=None):
        self.requests.append((method, path, params or {}, body))
        answer = self.responses[(method, path)]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def get(self, path, **params):
        return await self._answer("GET", path, params)

    async def post(self, path, json_body=None, **params):
        return await self._answer("POST", path, params, json_body)

    async def put(self, path, json_body=None):
        return await self._answer("PUT", path, body=json_body)

    async def delete(self, path):
        return await self._answer("DELETE", path)


@pytest.fixture
def api(monkeypatch):
    FakeApiClient.responses = {}
    FakeApiClient.requests = []
    monkeypatch.setattr("scrapeboard.cli.output.ApiClient", FakeApiClient)
    return FakeApiClient


PLUGIN = {
    "id": "plg_000000000001",
    "name": "Catalog",
    "target_url": "https://shop.example.com/catalog",
    "source_type": "html",
    "schedule": "5m",
    "enabled": True,
    "next_fire_at": "2025-01-06T12:05:00",
    "item_selector": None,
    "fields": [{"name": "heading", "selector": "h1", "value_type": "text", "multiple": False, "attribute": None}],
}


class TestPluginCommands:

    def test_list(self, cli_runner, api):
        api.responses[("GET", "/plugins")] = {"items": [PLUGIN], "total": 1}

        result = cli_runner.invoke(cli, ["plugins", "list", "--enabled", "-s", "cat", "--format", "json"])

        assert result.exit_code == 0
        assert "plg_000000000001" in result.output
        assert api.requests[0][2] == {"enabled": "true", "source_type": None, "q": "cat"}

    def test_add_sends_definition(self, cli_runner, api, temp_dir):
        api.responses[("POST", "/plugins")] = PLUGIN
        definition_file = temp_dir / "plugin.yaml"
        definition_file.write_text("name: Catalog\nschedule: 5m\n", encoding="utf-8")

        result = cli_runner.invoke(cli, ["plugins", "add", str(definition_file)])

        assert result.exit_code == 0
        assert "Created plugin plg_000000000001 (Catalog)" in result.output
        assert api.requests[0][3] == {"name": "Catalog", "schedule": "5m"}

    def test_run(self, cli_runner, api):
        api.responses[("POST", "/plugins/plg_000000000001/run")] = {"job_id": "job_abc", "job": {}}

        result = cli_runner.invoke(cli, ["plugins", "run", "plg_000000000001"])

        assert result.exit_code == 0
        assert "Queued job job_abc" in result.output

    def test_server_error_is_reported(self, cli_runner, api):
        api.responses[("POST", "/plugins/plg_missing/run")] = ApiError(
            "Plugin not found: plg_missing", status=404, payload={"code": "NOT_FOUND"}
        )

        result = cli_runner.invoke(cli, ["plugins", "run", "plg_missing"])

        assert result.exit_code == 1
        assert "Failed to run plugin: Plugin not found: plg_missing" in result.output

    def test_delete_with_confirmation_declined(self, cli_runner, api):
        result = cli_runner.invoke(cli, ["plugins", "delete", "plg_000000000001"], input="n\n")

        assert result.exit_code == 1
        assert api.requests == []


class TestJobCommands:

    def test_cancel_pending(self, cli_runner, api):
        api.responses[("POST", "/jobs/job_abc/cancel")] = {"job": {}, "pending": True}

        result = cli_runner.invoke(cli, ["jobs", "cancel", "job_abc"])

        assert result.exit_code == 0
        assert "Cancellation requested for job_abc" in result.output

    def test_list_json(self, cli_runner, api):
        api.responses[("GET", "/jobs")] = {
            "items": [], "total": 0, "page": 1, "size": 20, "pages": 0, "has_next": False, "has_prev": False,
        }

        result = cli_runner.invoke(cli, ["jobs", "list", "--status", "failed", "--format", "json"])

        assert result.exit_code == 0
        assert '"total": 0' in result.output
        assert api.requests[0][2]["status"] == "failed"


class TestLogsCommand:

    def test_export_to_file(self, cli_runner, api, temp_dir):
        api.responses[("GET", "/logs/export")] = "seq,timestamp,level\n1,2025-01-06T12:00:00,info\n"
        target = temp_dir / "events.csv"

        result = cli_runner.invoke(cli, ["logs", "--export", "csv", "-o", str(target), "--level", "error"])

        assert result.exit_code == 0
        assert target.read_text(encoding="utf-8").startswith("seq,timestamp,level")
        assert api.requests[0][2]["format"] == "csv"
        assert api.requests[0][2]["level"] == "error"
