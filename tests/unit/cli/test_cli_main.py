"""Tests for the CLI entry point."""

from unittest.mock import patch

from scrapeboard.cli.main import cli, handle_cli_error, main, setup_cli_logging
from scrapeboard.foundation.errors import ValidationError
from scrapeboard.version import __version__


class TestCLIFramework:

    def test_help_lists_commands(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Scrapeboard - scheduled crawl plugins" in result.output
        for command in ("serve", "plugins", "jobs", "workers", "logs", "preview", "config"):
            assert command in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_verbose_enables_info_logging(self, cli_runner):
        with patch("scrapeboard.cli.main.setup_cli_logging") as mock_setup:
            result = cli_runner.invoke(cli, ["-v", "config", "path"])

        assert result.exit_code == 0
        mock_setup.assert_called_once_with(1, log_to_file=False)

    def test_quiet_overrides_verbose(self, cli_runner):
        with patch("scrapeboard.cli.main.setup_cli_logging") as mock_setup:
            cli_runner.invoke(cli, ["-vv", "-q", "config", "path"])

        mock_setup.assert_called_once_with(0, log_to_file=False)


class TestCLILogging:

    def test_level_mapping(self):
        with patch("scrapeboard.cli.main.setup_logging") as mock_setup:
            setup_cli_logging(0)
            setup_cli_logging(2, log_to_file=True)

        assert mock_setup.call_args_list[0].kwargs == {"level": "WARNING", "log_file": ""}
        assert mock_setup.call_args_list[1].kwargs == {"level": "DEBUG", "log_file": None}


class TestErrorHandling:

    def test_scrapeboard_error(self):
        assert handle_cli_error(ValidationError("bad input", field="name")) == 1

    def test_unexpected_error(self):
        assert handle_cli_error(RuntimeError("boom")) == 1

    def test_main_returns_zero_on_success(self):
        assert main(["config", "path"]) == 0

    def test_main_reports_usage_errors(self):
        assert main(["plugins", "show"]) == 2
