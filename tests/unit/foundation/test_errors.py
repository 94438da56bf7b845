"""Tests for the error taxonomy and error handler."""

import pytest

from scrapeboard.foundation.errors import (
    ErrorCategory, ErrorContext, ErrorHandler, ErrorSeverity, ExtractionError, FetchError,
    JobCancelled, JobStateError, NotFoundError, PersistError, RetryConfig, ScrapeboardError,
    SchedulerConfigError, ValidationError, WorkerTimeout, calculate_retry_delay, error_payload,
)


class TestErrorTaxonomy:
    """Test the exception classes and their machine-readable form."""

    def test_base_error_defaults(self):
        error = ScrapeboardError("boom")

        assert error.message == "boom"
        assert error.category == ErrorCategory.SYSTEM
        assert error.severity == ErrorSeverity.MEDIUM
        assert error.retryable is False
        assert str(error) == "boom"

    def test_validation_error_records_field(self):
        error = ValidationError("Selector must not be empty", field="fields.title")

        assert error.category == ErrorCategory.VALIDATION
        assert error.retryable is False
        assert error.to_dict() == {
            "code": "VALIDATION_ERROR",
            "type": "ValidationError",
            "message": "Selector must not be empty",
            "details": {"field": "fields.title"},
            "retryable": False,
        }

    def test_not_found_error_details(self):
        error = NotFoundError("Plugin not found: p1", resource_type="plugin", resource_id="p1")

        assert error.error_code == "NOT_FOUND"
        assert error.details == {"resource_type": "plugin", "resource_id": "p1"}

    def test_job_state_error_details(self):
        error = JobStateError("nope", current_state="succeeded", target_state="cancelled")

        assert error.error_code == "INVALID_STATE"
        assert error.details["current_state"] == "succeeded"
        assert error.details["target_state"] == "cancelled"

    def test_fetch_timeout_is_retryable(self):
        error = FetchError("Timed out", url="https://example.com", timed_out=True)

        assert error.retryable is True
        assert error.error_code == "FETCH_TIMEOUT"
        assert error.details == {"url": "https://example.com", "timed_out": True}

    def test_fetch_http_error(self):
        error = FetchError("HTTP 503", status_code=503, url="https://example.com")

        assert error.error_code == "FETCH_ERROR"
        assert error.status_code == 503
        assert error.details["status_code"] == 503

    def test_retryable_flags(self):
        assert ExtractionError("bad").retryable is True
        assert PersistError("disk", operation="save_records").retryable is True
        assert WorkerTimeout("lost", worker_id="worker-1", timeout=30).retryable is True
        assert SchedulerConfigError("bad schedule", expression="often").retryable is False
        assert JobCancelled().retryable is False

    def test_scheduler_config_error_keeps_expression(self):
        error = SchedulerConfigError("bad", expression="sometimes", plugin_id="p1")

        assert error.details == {"expression": "sometimes", "plugin_id": "p1"}

    def test_error_payload_for_foreign_exception(self):
        payload = error_payload(KeyError("missing"))

        assert payload["code"] == "INTERNAL_ERROR"
        assert payload["type"] == "KeyError"
        assert payload["retryable"] is False


class TestErrorHandler:
    """Test error tracking and retry helpers."""

    def test_handle_scrapeboard_error(self):
        handler = ErrorHandler()
        context = ErrorContext(operation="job.run", plugin_id="p1", job_id="j1")

        info = handler.handle_error(FetchError("HTTP 500", status_code=500), context)

        assert info.error_type == "FetchError"
        assert info.category == ErrorCategory.FETCH
        assert info.context is context
        assert handler.error_count == 1
        assert handler.error_counts == {"fetch:FetchError": 1}

    def test_generic_errors_are_categorized(self):
        handler = ErrorHandler()

        assert handler.handle_error(ValueError("bad")).category == ErrorCategory.VALIDATION
        assert handler.handle_error(ConnectionError("reset")).category == ErrorCategory.FETCH
        assert handler.handle_error(PermissionError("denied")).category == ErrorCategory.PERSISTENCE

    def test_recent_errors_are_bounded(self):
        handler = ErrorHandler(max_recent_errors=3)

        for index in range(5):
            handler.handle_error(RuntimeError(f"error {index}"), ErrorContext(operation="loop"))

        assert handler.error_count == 5
        assert len(handler.recent_errors) == 3
        assert handler.recent_errors[0]["message"] == "error 4"
        assert handler.get_error_statistics()["operations"] == {"loop": 3}

    def test_should_retry(self):
        handler = ErrorHandler()

        assert handler.should_retry(FetchError("x"), attempt=1, max_attempts=3) is True
        assert handler.should_retry(FetchError("x"), attempt=3, max_attempts=3) is False
        assert handler.should_retry(ValidationError("x"), attempt=1, max_attempts=3) is False
        assert handler.should_retry(TimeoutError(), attempt=1, max_attempts=3) is True
        assert handler.should_retry(RuntimeError("boom"), attempt=2, max_attempts=3) is True
        assert handler.should_retry(RuntimeError("boom"), attempt=3, max_attempts=3) is False

    @pytest.mark.parametrize("attempt,expected", [(1, 2.0), (2, 4.0), (3, 8.0), (10, 300.0)])
    def test_retry_delay_doubles_and_caps(self, attempt, expected):
        config = RetryConfig(base_delay=1.0, max_delay=300.0)

        assert calculate_retry_delay(attempt, config) == expected

    def test_clear_errors(self):
        handler = ErrorHandler()
        handler.handle_error(RuntimeError("x"))

        handler.clear_errors()

        assert handler.error_count == 0
        assert handler.recent_errors == []
