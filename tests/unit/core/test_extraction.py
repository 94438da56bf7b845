"""Tests for HTML/JSON field extraction."""

import asyncio
import time
from datetime import datetime

import pytest

from scrapeboard.core.extraction import (
    ExtractionEngine, convert_value, parse_json_path, resolve_json_path
)
from scrapeboard.foundation.errors import ExtractionError
from scrapeboard.models.events import EventFilter, EventLevel
from scrapeboard.models.plugin import FieldRule, Plugin, SourceType, ValueType

EXTRACTED_AT = datetime(2025, 1, 6, 12, 0, 0)


def rules(*definitions):
    return [FieldRule(**data) for data in definitions]


def make_plugin(fields, **overrides):
    data = {
        "id": "p1",
        "name": "Catalog",
        "target_url": "https://shop.example.com/catalog",
        "schedule": "5m",
        "fields": fields,
        "created_at": EXTRACTED_AT,
        "updated_at": EXTRACTED_AT,
    }
    data.update(overrides)
    return Plugin(**data)


class TestHtmlExtraction:
    """Test CSS-based extraction from HTML."""

    def test_single_document(self, product_page):
        engine = ExtractionEngine()

        rows, missing = engine.extract_fields(
            product_page,
            rules({"name": "heading", "selector": "h1"}, {"name": "page", "selector": "title"}),
            SourceType.HTML,
        )

        assert rows == [{"heading": "Spring Catalog", "page": "Catalog"}]
        assert missing == {}

    def test_item_selector_yields_one_row_per_item(self, product_page):
        engine = ExtractionEngine()

        rows, missing = engine.extract_fields(
            product_page,
            rules(
                {"name": "name", "selector": "a"},
                {"name": "link", "selector": "a", "attribute": "href"},
                {"name": "price", "selector": ".price", "value_type": "number"},
                {"name": "in_stock", "selector": "em", "value_type": "boolean"},
            ),
            SourceType.HTML,
            item_selector="li.product",
        )

        assert rows == [
            {"name": "Kettle", "link": "/p/1", "price": 24.5, "in_stock": True},
            {"name": "Toaster", "link": "/p/2", "price": 1299.0, "in_stock": False},
            {"name": "Blender", "link": "/p/3", "price": None, "in_stock": None},
        ]
        assert missing == {"price": "no element matched", "in_stock": "no element matched"}

    def test_multiple_values(self, product_page):
        rows, _ = ExtractionEngine().extract_fields(
            product_page,
            rules({"name": "names", "selector": "li.product a", "multiple": True}),
            SourceType.HTML,
        )

        assert rows[0]["names"] == ["Kettle", "Toaster", "Blender"]

    def test_integer_and_html_values(self, product_page):
        rows, _ = ExtractionEngine().extract_fields(
            product_page,
            rules(
                {"name": "price", "selector": ".price", "value_type": "integer"},
                {"name": "first", "selector": "li.product", "value_type": "html"},
            ),
            SourceType.HTML,
        )

        assert rows[0]["price"] == 24
        assert rows[0]["first"].startswith('<a href="/p/1">Kettle</a>')

    def test_missing_attribute_reason(self, product_page):
        rows, missing = ExtractionEngine().extract_fields(
            product_page,
            rules({"name": "sku", "selector": "a", "attribute": "data-sku"}),
            SourceType.HTML,
        )

        assert rows == [{"sku": None}]
        assert missing == {"sku": "attribute 'data-sku' not found"}

    def test_unconvertible_value_reason(self, product_page):
        rows, missing = ExtractionEngine().extract_fields(
            product_page,
            rules({"name": "heading", "selector": "h1", "value_type": "number"}),
            SourceType.HTML,
        )

        assert rows == [{"heading": None}]
        assert missing == {"heading": "value not convertible to number"}

    def test_invalid_selector_raises(self, product_page):
        with pytest.raises(ExtractionError) as exc_info:
            ExtractionEngine().extract_fields(
                product_page, rules({"name": "x", "selector": "li["}), SourceType.HTML
            )

        assert exc_info.value.error_code == "INVALID_SELECTOR"

    def test_bytes_payload(self, product_page):
        rows, _ = ExtractionEngine().extract_fields(
            product_page.encode("utf-8"), rules({"name": "heading", "selector": "h1"}), SourceType.HTML
        )

        assert rows == [{"heading": "Spring Catalog"}]

    def test_item_selector_matching_nothing(self, product_page):
        rows, missing = ExtractionEngine().extract_fields(
            product_page, rules({"name": "name", "selector": "a"}), SourceType.HTML, item_selector="table tr"
        )

        assert rows == []
        assert missing == {}


class TestJsonExtraction:
    """Test path-based extraction from JSON."""

    def test_paths(self, product_json):
        rows, missing = ExtractionEngine().extract_fields(
            product_json,
            rules(
                {"name": "total", "selector": "$.data.total", "value_type": "integer"},
                {"name": "first", "selector": "data.items[0].title"},
                {"name": "last", "selector": "data.items[-1].title"},
                {"name": "person", "selector": "data.items[0]['first name']"},
                {"name": "titles", "selector": "data.items[*].title", "multiple": True},
            ),
            SourceType.JSON,
        )

        assert rows == [{
            "total": 2,
            "first": "Kettle",
            "last": "Toaster",
            "person": "Ada",
            "titles": ["Kettle", "Toaster"],
        }]
        assert missing == {}

    def test_item_selector(self, product_json):
        rows, missing = ExtractionEngine().extract_fields(
            product_json,
            rules(
                {"name": "title", "selector": "title"},
                {"name": "price", "selector": "price", "value_type": "number"},
                {"name": "available", "selector": "stock.available", "value_type": "boolean"},
            ),
            SourceType.JSON,
            item_selector="data.items",
        )

        assert rows == [
            {"title": "Kettle", "price": 24.5, "available": None},
            {"title": "Toaster", "price": 1299.0, "available": True},
        ]
        assert missing == {"available": "path not found"}

    def test_non_string_values_as_text(self, product_json):
        rows, _ = ExtractionEngine().extract_fields(
            product_json,
            rules({"name": "tags", "selector": "data.items[0].tags"}, {"name": "total", "selector": "data.total"}),
            SourceType.JSON,
        )

        assert rows == [{"tags": '["kitchen", "steel"]', "total": "2"}]

    def test_raw_keeps_structure(self, product_json):
        rows, _ = ExtractionEngine().extract_fields(
            product_json, rules({"name": "stock", "selector": "data.items[1].stock", "value_type": "raw"}), SourceType.JSON
        )

        assert rows == [{"stock": {"available": True}}]

    def test_invalid_json_raises(self):
        with pytest.raises(ExtractionError) as exc_info:
            ExtractionEngine().extract_fields("{not json", rules({"name": "a", "selector": "a"}), SourceType.JSON)

        assert exc_info.value.error_code == "INVALID_JSON"

    @pytest.mark.parametrize("path", ["data..title", "data[abc]", "data[0", "items[0]title"])
    def test_invalid_paths_raise(self, path):
        with pytest.raises(ExtractionError) as exc_info:
            parse_json_path(path)

        assert exc_info.value.error_code == "INVALID_SELECTOR"

    def test_parse_and_resolve(self):
        tokens = parse_json_path("$.a.b[1]['c d']")

        assert tokens == ["a", "b", 1, "c d"]
        assert resolve_json_path({"a": {"b": [{}, {"c d": 5}]}}, tokens) == 5

    def test_root_path(self):
        assert parse_json_path("$") == []
        assert resolve_json_path([1, 2], []) == [1, 2]


class TestConvertValue:

    @pytest.mark.parametrize("raw,value_type,expected", [
        ("$1,299.00", ValueType.NUMBER, 1299.0),
        ("-3.5 C", ValueType.NUMBER, -3.5),
        (".75", ValueType.NUMBER, 0.75),
        ("12 items", ValueType.INTEGER, 12),
        ("Yes", ValueType.BOOLEAN, True),
        ("Out of stock", ValueType.BOOLEAN, False),
        (0, ValueType.BOOLEAN, False),
        (True, ValueType.TEXT, "true"),
        (None, ValueType.NUMBER, None),
        ({"a": 1}, ValueType.RAW, {"a": 1}),
    ])
    def test_conversions(self, raw, value_type, expected):
        assert convert_value(raw, value_type) == expected


class TestExtract:
    """Test record building, events and the empty result policy."""

    def test_records_and_determinism(self, extraction, product_page):
        plugin = make_plugin([{"name": "name", "selector": "a"}], item_selector="li.product")

        first = extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT, attempt=2)
        second = extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT, attempt=2)

        assert first.records == second.records
        assert first.items_total == 3
        assert [record.index for record in first.records] == [0, 1, 2]
        assert first.records[0].fields == {"name": "Kettle"}
        assert first.records[0].attempt == 2
        assert first.records[0].plugin_id == "p1"
        assert not first.empty

    def test_one_warning_per_missing_field(self, extraction, event_log, product_page):
        plugin = make_plugin([
            {"name": "heading", "selector": "h1"},
            {"name": "rating", "selector": ".rating"},
        ])

        outcome = extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT)

        assert outcome.records[0].fields == {"heading": "Spring Catalog", "rating": None}
        assert outcome.missing_fields == {"rating": "no element matched"}
        warnings = event_log.query(EventFilter(level=EventLevel.WARNING))
        assert len(warnings) == 1
        assert warnings[0].message == "Field 'rating' matched nothing (no element matched)"
        assert warnings[0].source.job_id == "job_1"
        assert warnings[0].detail["selector"] == ".rating"

    def test_missing_field_warned_once_across_items(self, extraction, event_log, product_page):
        plugin = make_plugin([{"name": "rating", "selector": ".rating"}, {"name": "name", "selector": "a"}],
                             item_selector="li.product")

        extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT)

        assert len(event_log.query(EventFilter(level=EventLevel.WARNING))) == 1

    def test_empty_result_succeeds_with_error_event(self, extraction, event_log, product_page):
        plugin = make_plugin([{"name": "rating", "selector": ".rating"}])

        outcome = extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT)

        assert outcome.empty
        assert outcome.records[0].fields == {"rating": None}
        errors = event_log.query(EventFilter(level=EventLevel.ERROR))
        assert [event.message for event in errors] == ["Extraction produced no data"]

    def test_empty_result_fails_under_fail_policy(self, extraction, event_log, product_page):
        plugin = make_plugin([{"name": "rating", "selector": ".rating"}], empty_result_policy="fail")

        with pytest.raises(ExtractionError) as exc_info:
            extraction.extract(product_page, plugin, "job_1", EXTRACTED_AT)

        assert exc_info.value.error_code == "EMPTY_RESULT"
        assert len(event_log.query(EventFilter(level=EventLevel.WARNING))) == 1
        assert event_log.query(EventFilter(level=EventLevel.ERROR)) == []

    def test_without_event_log(self, product_page):
        plugin = make_plugin([{"name": "rating", "selector": ".rating"}])

        outcome = ExtractionEngine().extract(product_page, plugin, "job_1", EXTRACTED_AT)

        assert outcome.empty

    def test_validate_selector(self):
        ExtractionEngine.validate_selector("ul > li.product a[href]", SourceType.HTML)
        ExtractionEngine.validate_selector("data.items[*].title", SourceType.JSON)

        with pytest.raises(ExtractionError):
            ExtractionEngine.validate_selector("li[", SourceType.HTML)


class TestAsyncExtraction:
    """Test extraction that parses off the event loop."""

    @pytest.mark.asyncio
    async def test_matches_sync_extract(self, extraction, event_log, product_page):
        plugin = make_plugin([{"name": "name", "selector": "a"}, {"name": "rating", "selector": ".rating"}],
                             item_selector="li.product")

        outcome = await extraction.extract_async(product_page, plugin, "job_1", EXTRACTED_AT)

        assert outcome.records == ExtractionEngine().extract(product_page, plugin, "job_1", EXTRACTED_AT).records
        warnings = event_log.query(EventFilter(level=EventLevel.WARNING))
        assert [event.detail["field"] for event in warnings] == ["rating"]

    @pytest.mark.asyncio
    async def test_empty_result_policy_applies(self, extraction, product_page):
        plugin = make_plugin([{"name": "rating", "selector": ".rating"}], empty_result_policy="fail")

        with pytest.raises(ExtractionError) as exc_info:
            await extraction.extract_async(product_page, plugin, "job_1", EXTRACTED_AT)

        assert exc_info.value.error_code == "EMPTY_RESULT"

    @pytest.mark.asyncio
    async def test_event_loop_keeps_running_during_large_extraction(self, extraction):
        items = "".join(
            f'<li class="product"><a href="/p/{i}">Item {i}</a><span class="price">{i}.99</span></li>'
            for i in range(20000)
        )
        page = f"<html><body><ul>{items}</ul></body></html>"
        plugin = make_plugin(
            [{"name": "name", "selector": "a"}, {"name": "price", "selector": ".price", "value_type": "number"}],
            item_selector="li.product",
        )
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.perf_counter()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        try:
            outcome = await extraction.extract_async(page, plugin, "job_1", EXTRACTED_AT)
        finally:
            done.set()
            await ticking

        assert outcome.items_total == 20000
        assert outcome.records[-1].fields == {"name": "Item 19999", "price": 19999.99}
        assert len(gaps) > 1
        assert max(gaps) < 0.5
