"""Tests for the plugin registry."""

import pytest

from scrapeboard.core.registry import PluginRegistry
from scrapeboard.foundation.errors import NotFoundError, ValidationError
from scrapeboard.models.events import EventFilter, EventLevel
from scrapeboard.models.plugin import PluginChangeKind, SourceType


class TestValidate:

    def test_valid_definition(self, registry, make_definition):
        parsed = registry.validate(make_definition(schedule="every 10 minutes"))

        assert parsed.name == "Catalog"
        assert parsed.id is None

    def test_structural_errors_name_the_field(self, registry, make_definition):
        with pytest.raises(ValidationError) as exc_info:
            registry.validate(make_definition(target_url="ftp://example.com"))

        assert exc_info.value.field == "target_url"
        assert exc_info.value.details["errors"]

    def test_unusable_schedule(self, registry, make_definition):
        with pytest.raises(ValidationError) as exc_info:
            registry.validate(make_definition(schedule="whenever"))

        assert exc_info.value.field == "schedule"

    def test_invalid_css_selector(self, registry, make_definition):
        fields = [{"name": "price", "selector": "span["}]

        with pytest.raises(ValidationError) as exc_info:
            registry.validate(make_definition(fields=fields))

        assert exc_info.value.field == "fields.price"

    def test_invalid_json_path(self, registry, make_definition):
        definition = make_definition(source_type="json", fields=[{"name": "total", "selector": "data..total"}])

        with pytest.raises(ValidationError) as exc_info:
            registry.validate(definition)

        assert exc_info.value.field == "fields.total"

    def test_invalid_item_selector(self, registry, make_definition):
        with pytest.raises(ValidationError) as exc_info:
            registry.validate(make_definition(item_selector="li["))

        assert exc_info.value.field == "item_selector"


class TestMutations:

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_persists(self, registry, storage, event_log, manual_clock, make_definition):
        plugin = await registry.create(make_definition())

        assert plugin.id.startswith("plg_")
        assert plugin.created_at == manual_clock()
        assert registry.get(plugin.id) == plugin
        assert [stored.id for stored in await storage.load_plugins()] == [plugin.id]
        events = event_log.query(EventFilter(component="registry"))
        assert [event.message for event in events] == ["Plugin 'Catalog' created"]

    @pytest.mark.asyncio
    async def test_create_with_taken_id(self, registry, make_definition):
        await registry.create(make_definition(id="catalog"))

        with pytest.raises(ValidationError) as exc_info:
            await registry.create(make_definition(id="catalog"))

        assert exc_info.value.field == "id"

    @pytest.mark.asyncio
    async def test_invalid_create_changes_nothing(self, registry, make_definition):
        with pytest.raises(ValidationError):
            await registry.create(make_definition(schedule="sometimes"))

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_update_keeps_identity(self, registry, manual_clock, make_definition):
        plugin = await registry.create(make_definition())
        manual_clock.advance(60)

        updated = await registry.update(plugin.id, make_definition(name="Renamed"))

        assert updated.id == plugin.id
        assert updated.name == "Renamed"
        assert updated.created_at == plugin.created_at
        assert updated.updated_at > plugin.updated_at

    @pytest.mark.asyncio
    async def test_update_cannot_change_id(self, registry, make_definition):
        plugin = await registry.create(make_definition())

        with pytest.raises(ValidationError):
            await registry.update(plugin.id, make_definition(id="other"))

    @pytest.mark.asyncio
    async def test_update_missing_plugin(self, registry, make_definition):
        with pytest.raises(NotFoundError):
            await registry.update("nope", make_definition())

    @pytest.mark.asyncio
    async def test_set_enabled(self, registry, event_log, make_definition):
        plugin = await registry.create(make_definition())

        enabled = await registry.set_enabled(plugin.id, True)
        assert enabled.enabled is True
        # No-op when already in the requested state
        assert await registry.set_enabled(plugin.id, True) is enabled

        disabled = await registry.set_enabled(plugin.id, False, reason="Invalid schedule")
        assert disabled.enabled is False
        warnings = event_log.query(EventFilter(level=EventLevel.WARNING, component="registry"))
        assert [event.message for event in warnings] == ["Plugin 'Catalog' disabled: Invalid schedule"]

    @pytest.mark.asyncio
    async def test_enabling_requires_fields(self, registry, make_definition):
        plugin = await registry.create(make_definition(fields=[]))

        with pytest.raises(ValidationError):
            await registry.set_enabled(plugin.id, True)

    @pytest.mark.asyncio
    async def test_delete(self, registry, storage, make_definition):
        plugin = await registry.create(make_definition())

        deleted = await registry.delete(plugin.id)

        assert deleted.id == plugin.id
        assert plugin.id not in registry
        assert registry.find(plugin.id) is None
        assert await storage.load_plugins() == []
        with pytest.raises(NotFoundError):
            await registry.delete(plugin.id)


class TestReads:

    @pytest.mark.asyncio
    async def test_list_filters(self, registry, manual_clock, make_definition):
        await registry.create(make_definition(name="News", target_url="https://news.example.com/", enabled=True))
        manual_clock.advance(1)
        await registry.create(make_definition(
            name="Prices API",
            target_url="https://api.example.com/prices",
            source_type="json",
            fields=[{"name": "total", "selector": "data.total"}],
        ))

        assert [p.name for p in registry.list()] == ["News", "Prices API"]
        assert [p.name for p in registry.list(enabled=True)] == ["News"]
        assert [p.name for p in registry.list(source_type=SourceType.JSON)] == ["Prices API"]
        assert [p.name for p in registry.list(search="NEWS.example")] == ["News"]

    def test_get_unknown(self, registry):
        with pytest.raises(NotFoundError) as exc_info:
            registry.get("nope")

        assert exc_info.value.error_code == "NOT_FOUND"


class TestListeners:

    @pytest.mark.asyncio
    async def test_listeners_see_every_change(self, registry, make_definition):
        changes = []
        unsubscribe = registry.subscribe(changes.append)

        plugin = await registry.create(make_definition())
        await registry.update(plugin.id, make_definition(name="Renamed"))
        await registry.update(plugin.id, make_definition(name="Renamed", schedule="10m"))
        await registry.delete(plugin.id)
        unsubscribe()
        await registry.create(make_definition())

        assert [change.kind for change in changes] == [
            PluginChangeKind.CREATED,
            PluginChangeKind.UPDATED,
            PluginChangeKind.UPDATED,
            PluginChangeKind.DELETED,
        ]
        assert [change.schedule_changed for change in changes] == [True, False, True, True]
        assert changes[-1].plugin is None

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_mutation(self, registry, make_definition):
        def broken(change):
            raise RuntimeError("boom")

        registry.subscribe(broken)

        plugin = await registry.create(make_definition())

        assert plugin.id in registry

    @pytest.mark.asyncio
    async def test_load_from_storage(self, registry, storage, event_log, manual_clock, make_definition):
        plugin = await registry.create(make_definition())
        fresh = PluginRegistry(storage, event_log, manual_clock)
        seen = []
        fresh.subscribe(seen.append)

        assert await fresh.load() == 1
        assert fresh.get(plugin.id).name == plugin.name
        assert [change.plugin_id for change in seen] == [plugin.id]
