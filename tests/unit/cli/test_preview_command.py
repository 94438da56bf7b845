"""Tests for the local preview command."""

import json

import pytest
import yaml

from scrapeboard.cli.main import cli


@pytest.fixture
def preview_files(temp_dir, product_page):
    def _write(**overrides):
        definition = {
            "name": "Catalog",
            "target_url": "https://shop.example.com/catalog",
            "schedule": "1h",
            "item_selector": "li.product",
            "fields": [
                {"name": "name", "selector": "a"},
                {"name": "price", "selector": ".price", "value_type": "number"},
            ],
        }
        definition.update(overrides)
        definition_file = temp_dir / "plugin.yaml"
        definition_file.write_text(yaml.safe_dump(definition), encoding="utf-8")
        content_file = temp_dir / "page.html"
        content_file.write_text(product_page, encoding="utf-8")
        return str(definition_file), str(content_file)

    return _write


class TestPreviewCommand:

    def test_json_output(self, cli_runner, preview_files):
        definition_file, content_file = preview_files()

        result = cli_runner.invoke(cli, ["preview", definition_file, "--content", content_file, "--format", "json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [row["name"] for row in data["records"]] == ["Kettle", "Toaster", "Blender"]
        assert data["records"][0]["price"] == 24.5
        assert data["missing"] == {"price": "no element matched"}
        assert data["items_total"] == 3

    def test_table_output_warns_about_missing_fields(self, cli_runner, preview_files):
        definition_file, content_file = preview_files()

        result = cli_runner.invoke(cli, ["preview", definition_file, "--content", content_file])

        assert result.exit_code == 0
        assert "Preview of Catalog (3 records)" in result.output
        assert "Kettle" in result.output
        assert "field 'price' matched nothing (no element matched)" in result.output

    def test_invalid_definition(self, cli_runner, preview_files):
        definition_file, content_file = preview_files(schedule="whenever")

        result = cli_runner.invoke(cli, ["preview", definition_file, "--content", content_file])

        assert result.exit_code == 1
        assert "Preview failed:" in result.output

    def test_definition_must_be_mapping(self, cli_runner, temp_dir):
        definition_file = temp_dir / "plugin.yaml"
        definition_file.write_text("- just\n- a list\n", encoding="utf-8")

        result = cli_runner.invoke(cli, ["preview", str(definition_file)])

        assert result.exit_code == 1
        assert "must be a mapping" in result.output
