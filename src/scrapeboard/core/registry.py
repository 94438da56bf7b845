"""Plugin registry: validated crawl-plugin definitions."""

import uuid
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import pydantic

from ..foundation.clock import Clock, utcnow
from ..foundation.errors import (
    ExtractionError, NotFoundError, SchedulerConfigError, ValidationError
)
from ..foundation.logging import get_logger
from ..models.events import EventLevel
from ..models.plugin import (
    Plugin, PluginChanged, PluginChangeKind, PluginDefinition, SourceType
)
from .extraction import ExtractionEngine
from .schedule import parse_schedule

PluginListener = Callable[[PluginChanged], None]
DefinitionInput = Union[PluginDefinition, Mapping[str, Any]]


def _validation_error(error: pydantic.ValidationError) -> ValidationError:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        problems.append(f"{location}: {message}" if location else message)
    first_field = ".".join(str(part) for part in error.errors()[0].get("loc", ())) if error.errors() else None
    validation_error = ValidationError(
        "Invalid plugin definition: " + "; ".join(problems),
        field=first_field or None,
    )
    validation_error._set_detail("errors", problems)
    return validation_error


class PluginRegistry:
    """Stores plugin definitions and notifies listeners of changes.

    Reads see an immutable snapshot; every mutation builds a new mapping and
    swaps it in. Listeners (the scheduler) are called synchronously after
    each mutation.
    """

    def __init__(self, storage=None, event_log=None, clock: Clock = utcnow):
        self.logger = get_logger(__name__)
        self.storage = storage
        self.event_log = event_log
        self.clock = clock
        self._plugins: Mapping[str, Plugin] = MappingProxyType({})
        self._listeners: List[PluginListener] = []

    # ---------------------------------------------- #
    # Validation
    def validate(self, definition: DefinitionInput) -> PluginDefinition:
        """Validate a definition without registering it.

        Raises:
            ValidationError: On structural problems, bad selectors or an
                unusable schedule
        """
        try:
            if isinstance(definition, PluginDefinition):
                parsed = PluginDefinition.model_validate(definition.model_dump())
            else:
                parsed = PluginDefinition.model_validate(dict(definition))
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        try:
            parse_schedule(parsed.schedule, plugin_id=parsed.id)
        except SchedulerConfigError as e:
            raise ValidationError(e.message, field="schedule") from e

        selectors = [(f"fields.{rule.name}", rule.selector) for rule in parsed.fields]
        if parsed.item_selector:
            selectors.append(("item_selector", parsed.item_selector))
        for field_name, selector in selectors:
            try:
                ExtractionEngine.validate_selector(selector, parsed.source_type)
            except ExtractionError as e:
                raise ValidationError(e.message, field=field_name) from e

        return parsed

    # ---------------------------------------------- #
    # Mutations
    async def create(self, definition: DefinitionInput) -> Plugin:
        """Register a new plugin.

        Raises:
            ValidationError: If the definition is invalid or the id is taken
        """
        parsed = self.validate(definition)
        plugin_id = parsed.id or f"plg_{uuid.uuid4().hex[:12]}"
        if plugin_id in self._plugins:
            raise ValidationError(f"Plugin id already exists: {plugin_id}", field="id")

        now = self.clock()
        plugin = Plugin(**{**parsed.model_dump(), "id": plugin_id, "created_at": now, "updated_at": now})
        await self._persist(plugin)
        self._replace(plugin_id, plugin)
        self._notify(PluginChanged(plugin_id, PluginChangeKind.CREATED, plugin, schedule_changed=True))
        self._event(EventLevel.INFO, f"Plugin '{plugin.name}' created", plugin_id)
        return plugin

    async def update(self, plugin_id: str, definition: DefinitionInput) -> Plugin:
        """Replace a plugin's definition, keeping its id and creation time.

        Raises:
            NotFoundError: If the plugin does not exist
            ValidationError: If the definition is invalid
        """
        current = self.get(plugin_id)
        parsed = self.validate(definition)
        if parsed.id is not None and parsed.id != plugin_id:
            raise ValidationError("Plugin id cannot be changed", field="id")

        plugin = Plugin(**{
            **parsed.model_dump(),
            "id": plugin_id,
            "created_at": current.created_at,
            "updated_at": self.clock(),
        })
        schedule_changed = (
            plugin.schedule != current.schedule
            or plugin.start_at != current.start_at
            or plugin.enabled != current.enabled
        )
        await self._persist(plugin)
        self._replace(plugin_id, plugin)
        self._notify(PluginChanged(plugin_id, PluginChangeKind.UPDATED, plugin, schedule_changed=schedule_changed))
        self._event(EventLevel.INFO, f"Plugin '{plugin.name}' updated", plugin_id)
        return plugin

    async def set_enabled(self, plugin_id: str, enabled: bool, reason: Optional[str] = None) -> Plugin:
        """Enable or disable a plugin.

        Raises:
            NotFoundError: If the plugin does not exist
            ValidationError: When enabling a plugin without fields
        """
        current = self.get(plugin_id)
        if current.enabled == enabled:
            return current
        if enabled and not current.fields:
            raise ValidationError("A plugin needs at least one field before it can be enabled", field="fields")

        plugin = current.model_copy(update={"enabled": enabled, "updated_at": self.clock()})
        await self._persist(plugin)
        self._replace(plugin_id, plugin)
        self._notify(PluginChanged(plugin_id, PluginChangeKind.UPDATED, plugin, schedule_changed=True))
        state = "enabled" if enabled else "disabled"
        message = f"Plugin '{plugin.name}' {state}" + (f": {reason}" if reason else "")
        self._event(EventLevel.WARNING if reason else EventLevel.INFO, message, plugin_id)
        return plugin

    async def delete(self, plugin_id: str) -> Plugin:
        """Remove a plugin.

        Raises:
            NotFoundError: If the plugin does not exist
        """
        plugin = self.get(plugin_id)
        if self.storage is not None:
            await self.storage.delete_plugin(plugin_id)
        self._replace(plugin_id, None)
        self._notify(PluginChanged(plugin_id, PluginChangeKind.DELETED, None, schedule_changed=True))
        self._event(EventLevel.INFO, f"Plugin '{plugin.name}' deleted", plugin_id)
        return plugin

    async def load(self) -> int:
        """Load stored definitions. Listeners are notified for each plugin."""
        if self.storage is None:
            return 0
        plugins = await self.storage.load_plugins()
        self._plugins = MappingProxyType({plugin.id: plugin for plugin in plugins})
        for plugin in plugins:
            self._notify(PluginChanged(plugin.id, PluginChangeKind.CREATED, plugin, schedule_changed=True))
        self.logger.info(f"Loaded {len(plugins)} plugins from storage")
        return len(plugins)

    # ---------------------------------------------- #
    # Reads
    def get(self, plugin_id: str) -> Plugin:
        """Raises NotFoundError for unknown ids."""
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise NotFoundError(f"Plugin not found: {plugin_id}", resource_type="plugin", resource_id=plugin_id)
        return plugin

    def find(self, plugin_id: str) -> Optional[Plugin]:
        return self._plugins.get(plugin_id)

    def list(
        self,
        enabled: Optional[bool] = None,
        source_type: Optional[SourceType] = None,
        search: Optional[str] = None,
    ) -> List[Plugin]:
        """Plugins ordered by creation time, optionally filtered."""
        plugins = list(self._plugins.values())
        if enabled is not None:
            plugins = [p for p in plugins if p.enabled == enabled]
        if source_type is not None:
            plugins = [p for p in plugins if p.source_type == source_type]
        if search:
            needle = search.lower()
            plugins = [p for p in plugins if needle in p.name.lower() or needle in p.target_url.lower()]
        return sorted(plugins, key=lambda p: (p.created_at, p.id))

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    # ---------------------------------------------- #
    # Listeners
    def subscribe(self, listener: PluginListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: PluginChanged) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                self.logger.error(f"Plugin listener failed for {change.plugin_id}: {e}")

    def _replace(self, plugin_id: str, plugin: Optional[Plugin]) -> None:
        updated: Dict[str, Plugin] = dict(self._plugins)
        if plugin is None:
            updated.pop(plugin_id, None)
        else:
            updated[plugin_id] = plugin
        self._plugins = MappingProxyType(updated)

    async def _persist(self, plugin: Plugin) -> None:
        if self.storage is not None:
            await self.storage.save_plugin(plugin)

    def _event(self, level: EventLevel, message: str, plugin_id: str) -> None:
        if self.event_log is not None:
            self.event_log.emit(level, "registry", message, plugin_id=plugin_id)
