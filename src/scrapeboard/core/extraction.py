"""Field extraction from fetched HTML and JSON payloads."""

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import soupsieve
from bs4 import BeautifulSoup, Tag

from ..foundation.errors import ExtractionError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.events import EventLevel
from ..models.plugin import EmptyResultPolicy, FieldRule, Plugin, SourceType, ValueType
from ..models.record import ExtractedRecord

_MISSING = object()
_WILDCARD = object()

_NUMBER_RE = re.compile(r"[-+]?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?|[-+]?\.\d+")
_TRUE_WORDS = {"true", "yes", "y", "1", "on", "in stock", "available"}
_FALSE_WORDS = {"false", "no", "n", "0", "off", "out of stock", "unavailable", ""}

PathToken = Union[str, int, object]


@dataclass
class ExtractionOutcome:
    """Result of applying a plugin's field rules to one payload."""
    records: List[ExtractedRecord] = field(default_factory=list)
    missing_fields: Dict[str, str] = field(default_factory=dict)
    empty: bool = False

    @property
    def items_total(self) -> int:
        return len(self.records)


# ==================== JSON PATHS ====================

def parse_json_path(path: str) -> List[PathToken]:
    """Tokenize a dot/bracket path such as ``$.data.items[0]['first name']``.

    Raises:
        ExtractionError: If the path is malformed
    """
    tokens: List[PathToken] = []
    text = path.strip()
    i = 0
    if text.startswith("$"):
        i = 1

    def invalid(reason: str) -> ExtractionError:
        return ExtractionError(
            f"Invalid JSON path {path!r}: {reason}",
            selector=path,
            source_type=SourceType.JSON.value,
            error_code="INVALID_SELECTOR",
        )

    expect_key = i == 0
    while i < len(text):
        char = text[i]
        if char == ".":
            i += 1
            expect_key = True
            if i >= len(text) or text[i] in ".[":
                raise invalid("empty key")
            continue
        if char == "[":
            end = text.find("]", i)
            if end == -1:
                raise invalid("unclosed bracket")
            inner = text[i + 1:end].strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
                tokens.append(inner[1:-1])
            elif inner == "*":
                tokens.append(_WILDCARD)
            elif re.fullmatch(r"-?\d+", inner):
                tokens.append(int(inner))
            else:
                raise invalid(f"bad index {inner!r}")
            i = end + 1
            expect_key = False
            continue
        if not expect_key:
            raise invalid(f"unexpected {char!r} at position {i}")
        match = re.match(r"[^.\[\]]+", text[i:])
        if not match:
            raise invalid(f"unexpected {char!r} at position {i}")
        key = match.group(0)
        tokens.append(_WILDCARD if key == "*" else key)
        i += len(key)
        expect_key = False

    if not tokens and not text.startswith("$"):
        raise invalid("empty path")
    return tokens


def resolve_json_path(data: Any, tokens: Sequence[PathToken]) -> Any:
    """Resolve tokens against parsed JSON.

    Returns the value, a list when a wildcard was used, or ``_MISSING``.
    """
    if not tokens:
        return data

    token, rest = tokens[0], tokens[1:]
    if token is _WILDCARD:
        if isinstance(data, dict):
            children = list(data.values())
        elif isinstance(data, list):
            children = data
        else:
            return _MISSING
        matches = []
        for child in children:
            value = resolve_json_path(child, rest)
            if value is _MISSING:
                continue
            if isinstance(value, list) and _WILDCARD in rest:
                matches.extend(value)
            else:
                matches.append(value)
        return matches if matches else _MISSING

    if isinstance(token, int):
        if not isinstance(data, list) or not -len(data) <= token < len(data):
            return _MISSING
        return resolve_json_path(data[token], rest)

    if isinstance(data, dict) and token in data:
        return resolve_json_path(data[token], rest)
    return _MISSING


# ==================== VALUE CONVERSION ====================

def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if match:
            return float(match.group(0).replace(",", ""))
    return _MISSING


def _to_integer(value: Any) -> Any:
    number = _to_number(value)
    return _MISSING if number is _MISSING else int(number)


def _to_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = " ".join(value.lower().split())
        if normalized in _TRUE_WORDS:
            return True
        if normalized in _FALSE_WORDS:
            return False
    return _MISSING


def _to_text(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def convert_value(value: Any, value_type: ValueType) -> Any:
    """Convert a raw extracted value. Returns ``_MISSING`` when it cannot be converted."""
    if value is None:
        return None
    if value_type == ValueType.NUMBER:
        return _to_number(value)
    if value_type == ValueType.INTEGER:
        return _to_integer(value)
    if value_type == ValueType.BOOLEAN:
        return _to_boolean(value)
    if value_type in (ValueType.TEXT, ValueType.HTML):
        return _to_text(value)
    return value


# ==================== ENGINE ====================

class ExtractionEngine:
    """Turns raw payloads plus field rules into records.

    The extraction itself is a pure function of its inputs; events are only
    emitted by :meth:`extract` and :meth:`extract_async`. The async variants
    parse in a worker thread so a large page does not stall the event loop.
    """

    def __init__(self, event_log=None):
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.event_log = event_log

    @staticmethod
    def validate_selector(selector: str, source_type: SourceType) -> None:
        """Raise ExtractionError if ``selector`` is not valid for the source type."""
        if source_type == SourceType.JSON:
            parse_json_path(selector)
            return
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise ExtractionError(
                f"Invalid CSS selector {selector!r}: {e}",
                selector=selector,
                source_type=source_type.value,
                error_code="INVALID_SELECTOR",
            ) from e

    def extract_fields(
        self,
        content: Union[str, bytes],
        fields: Sequence[FieldRule],
        source_type: SourceType,
        item_selector: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
        """Apply field rules to a payload.

        Args:
            content: Raw HTML or JSON
            fields: Field rules, applied in order
            source_type: How to parse ``content``
            item_selector: Optional selector for a collection; each item
                yields one row

        Returns:
            Tuple of (rows, missing) where ``missing`` maps each field that
            matched nothing in at least one row to the reason

        Raises:
            ExtractionError: If the payload or a selector cannot be parsed
        """
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")

        if source_type == SourceType.JSON:
            items, evaluate = self._json_items(content, item_selector)
        else:
            items, evaluate = self._html_items(content, item_selector)

        rows: List[Dict[str, Any]] = []
        missing: Dict[str, str] = {}
        for item in items:
            row: Dict[str, Any] = {}
            for rule in fields:
                value, reason = evaluate(item, rule)
                if reason:
                    missing.setdefault(rule.name, reason)
                row[rule.name] = value
            rows.append(row)
        return rows, missing

    def extract(
        self,
        content: Union[str, bytes],
        plugin: Plugin,
        job_id: str,
        extracted_at: datetime,
        attempt: int = 1,
    ) -> ExtractionOutcome:
        """Extract records for a job run.

        Missing fields become ``None`` with one warning event each. A result
        where nothing matched raises when the plugin's empty result policy is
        ``fail`` and emits an error event otherwise.

        Raises:
            ExtractionError: On unparseable payloads, bad selectors, or an
                empty result under the ``fail`` policy
        """
        rows, missing = self.extract_fields(content, plugin.fields, plugin.source_type, plugin.item_selector)
        return self._build_outcome(rows, missing, plugin, job_id, extracted_at, attempt)

    async def extract_fields_async(
        self,
        content: Union[str, bytes],
        fields: Sequence[FieldRule],
        source_type: SourceType,
        item_selector: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
        """Run :meth:`extract_fields` in a worker thread."""
        return await asyncio.to_thread(self.extract_fields, content, fields, source_type, item_selector)

    async def extract_async(
        self,
        content: Union[str, bytes],
        plugin: Plugin,
        job_id: str,
        extracted_at: datetime,
        attempt: int = 1,
    ) -> ExtractionOutcome:
        """Same as :meth:`extract`, with parsing off the event loop.

        Events are emitted back on the loop, since the event log is not
        thread-safe.
        """
        rows, missing = await self.extract_fields_async(
            content, plugin.fields, plugin.source_type, plugin.item_selector
        )
        return self._build_outcome(rows, missing, plugin, job_id, extracted_at, attempt)

    def _build_outcome(
        self,
        rows: List[Dict[str, Any]],
        missing: Dict[str, str],
        plugin: Plugin,
        job_id: str,
        extracted_at: datetime,
        attempt: int,
    ) -> ExtractionOutcome:
        records = [
            ExtractedRecord(
                job_id=job_id,
                plugin_id=plugin.id,
                fields=row,
                extracted_at=extracted_at,
                index=index,
                attempt=attempt,
            )
            for index, row in enumerate(rows)
        ]
        empty = not rows or all(value is None for row in rows for value in row.values())
        outcome = ExtractionOutcome(records=records, missing_fields=missing, empty=empty)

        for rule in plugin.fields:
            if rule.name in missing:
                self._emit(
                    EventLevel.WARNING,
                    f"Field '{rule.name}' matched nothing ({missing[rule.name]})",
                    plugin.id,
                    job_id,
                    {"field": rule.name, "selector": rule.selector, "reason": missing[rule.name]},
                )

        self.metrics.increment_counter("extraction.records", len(records))

        if empty:
            if plugin.empty_result_policy == EmptyResultPolicy.FAIL:
                raise ExtractionError(
                    f"Extraction for plugin {plugin.id} produced no data",
                    source_type=plugin.source_type.value,
                    error_code="EMPTY_RESULT",
                )
            self._emit(
                EventLevel.ERROR,
                "Extraction produced no data",
                plugin.id,
                job_id,
                {"items": len(rows), "fields": [rule.name for rule in plugin.fields]},
            )

        return outcome

    def _emit(self, level: EventLevel, message: str, plugin_id: str, job_id: str, detail: Dict[str, Any]) -> None:
        if self.event_log is not None:
            self.event_log.emit(level, "extraction", message, plugin_id=plugin_id, job_id=job_id, detail=detail)
        elif level == EventLevel.ERROR:
            self.logger.error(f"[{plugin_id}/{job_id}] {message}")
        else:
            self.logger.warning(f"[{plugin_id}/{job_id}] {message}")

    # ---------------------------------------------- #
    # HTML
    def _html_items(self, content: str, item_selector: Optional[str]):
        soup = BeautifulSoup(content, "html.parser")
        if item_selector:
            items: List[Tag] = self._select(soup, item_selector)
        else:
            items = [soup]

        def evaluate(item: Tag, rule: FieldRule) -> Tuple[Any, Optional[str]]:
            elements = self._select(item, rule.selector)
            if not elements:
                return None, "no element matched"
            if not rule.multiple:
                elements = elements[:1]

            values = []
            for element in elements:
                raw = self._html_raw_value(element, rule)
                if raw is None:
                    continue
                value = convert_value(raw, rule.value_type)
                if value is not _MISSING:
                    values.append(value)

            if not values:
                if rule.attribute:
                    return None, f"attribute '{rule.attribute}' not found"
                return None, f"value not convertible to {rule.value_type.value}"
            return (values if rule.multiple else values[0]), None

        return items, evaluate

    @staticmethod
    def _select(node: Tag, selector: str) -> List[Tag]:
        try:
            return node.select(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise ExtractionError(
                f"Invalid CSS selector {selector!r}: {e}",
                selector=selector,
                source_type=SourceType.HTML.value,
                error_code="INVALID_SELECTOR",
            ) from e

    @staticmethod
    def _html_raw_value(element: Tag, rule: FieldRule) -> Optional[str]:
        if rule.attribute:
            value = element.get(rule.attribute)
            if isinstance(value, list):
                value = " ".join(value)
            return value
        if rule.value_type == ValueType.HTML:
            return element.decode_contents().strip()
        if rule.value_type == ValueType.RAW:
            return element.get_text()
        return " ".join(element.get_text(" ").split())

    # ---------------------------------------------- #
    # JSON
    def _json_items(self, content: str, item_selector: Optional[str]):
        try:
            data = json.loads(content)
        except ValueError as e:
            raise ExtractionError(
                f"Payload is not valid JSON: {e}",
                source_type=SourceType.JSON.value,
                error_code="INVALID_JSON",
            ) from e

        if item_selector:
            collection = resolve_json_path(data, parse_json_path(item_selector))
            if collection is _MISSING or collection is None:
                items: List[Any] = []
            elif isinstance(collection, list):
                items = collection
            else:
                items = [collection]
        else:
            items = [data]

        paths: Dict[str, List[PathToken]] = {}

        def evaluate(item: Any, rule: FieldRule) -> Tuple[Any, Optional[str]]:
            if rule.selector not in paths:
                paths[rule.selector] = parse_json_path(rule.selector)
            value = resolve_json_path(item, paths[rule.selector])
            if value is _MISSING:
                return None, "path not found"

            values = value if isinstance(value, list) and (rule.multiple or _WILDCARD in paths[rule.selector]) else [value]
            if not rule.multiple:
                values = values[:1]
            converted = [convert_value(v, rule.value_type) for v in values]
            converted = [v for v in converted if v is not _MISSING]
            if not converted:
                return None, f"value not convertible to {rule.value_type.value}"
            return (converted if rule.multiple else converted[0]), None

        return items, evaluate
