"""Error handling and exception management for the Scrapeboard system."""

import traceback
from enum import Enum
from typing import Any, Dict, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime

from .clock import utcnow
from .logging import get_logger


class ErrorCategory(str, Enum):
    """Categories of errors that can occur in the system."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE = "state"
    FETCH = "fetch"
    EXTRACTION = "extraction"
    PERSISTENCE = "persistence"
    WORKER = "worker"
    SCHEDULER = "scheduler"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for error handling."""
    operation: str
    url: Optional[str] = None
    plugin_id: Optional[str] = None
    job_id: Optional[str] = None
    worker_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operation": self.operation,
            "url": self.url,
            "plugin_id": self.plugin_id,
            "job_id": self.job_id,
            "worker_id": self.worker_id,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None
        }


@dataclass
class ErrorInfo:
    """Detailed error information."""
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    context: Optional[ErrorContext] = None
    traceback: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    retryable: bool = False


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    exponential_base: float = 2.0


class ScrapeboardError(Exception):
    """Base exception class for all Scrapeboard errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None,
        retryable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code
        self.details = details
        self.context = context
        self.retryable = retryable
        self.timestamp = utcnow()

    def _set_detail(self, key: str, value: Any) -> None:
        if self.details is None:
            self.details = {}
        self.details[key] = value

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo."""
        return ErrorInfo(
            error_type=self.__class__.__name__,
            message=self.message,
            category=self.category,
            severity=self.severity,
            code=self.error_code,
            details=self.details or {},
            context=self.context,
            traceback=traceback.format_exc(),
            timestamp=self.timestamp,
            retryable=self.retryable
        )

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form stored on jobs and returned by the API."""
        return {
            "code": self.error_code,
            "type": self.__class__.__name__,
            "message": self.message,
            "details": dict(self.details or {}),
            "retryable": self.retryable,
        }


class ValidationError(ScrapeboardError):
    """Error raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            error_code="VALIDATION_ERROR",
            retryable=False,
            **kwargs
        )
        self.field = field
        if field:
            self._set_detail("field", field)


class NotFoundError(ScrapeboardError):
    """Error raised when a plugin, job or worker does not exist."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            error_code="NOT_FOUND",
            retryable=False,
            **kwargs
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        if resource_type:
            self._set_detail("resource_type", resource_type)
        if resource_id:
            self._set_detail("resource_id", resource_id)


class JobStateError(ScrapeboardError):
    """Error raised on an illegal job state transition."""

    def __init__(self, message: str, current_state: Optional[str] = None, target_state: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.MEDIUM,
            error_code="INVALID_STATE",
            retryable=False,
            **kwargs
        )
        if current_state:
            self._set_detail("current_state", current_state)
        if target_state:
            self._set_detail("target_state", target_state)


class FetchError(ScrapeboardError):
    """Error raised when fetching a plugin target fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        timed_out: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.FETCH,
            severity=ErrorSeverity.MEDIUM,
            error_code="FETCH_TIMEOUT" if timed_out else "FETCH_ERROR",
            retryable=True,
            **kwargs
        )
        self.status_code = status_code
        self.url = url
        self.timed_out = timed_out
        if status_code:
            self._set_detail("status_code", status_code)
        if url:
            self._set_detail("url", url)
        if timed_out:
            self._set_detail("timed_out", True)


class ExtractionError(ScrapeboardError):
    """Error raised when content extraction fails."""

    def __init__(
        self,
        message: str,
        selector: Optional[str] = None,
        source_type: Optional[str] = None,
        error_code: str = "EXTRACTION_ERROR",
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.EXTRACTION,
            severity=ErrorSeverity.MEDIUM,
            error_code=error_code,
            retryable=True,
            **kwargs
        )
        self.selector = selector
        if selector:
            self._set_detail("selector", selector)
        if source_type:
            self._set_detail("source_type", source_type)


class PersistError(ScrapeboardError):
    """Error raised when records or state cannot be written to storage."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PERSISTENCE,
            severity=ErrorSeverity.HIGH,
            error_code="PERSIST_ERROR",
            retryable=True,
            **kwargs
        )
        if operation:
            self._set_detail("operation", operation)


class WorkerTimeout(ScrapeboardError):
    """Error recorded on a job whose worker stopped heartbeating."""

    def __init__(self, message: str, worker_id: Optional[str] = None, timeout: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.WORKER,
            severity=ErrorSeverity.HIGH,
            error_code="WORKER_TIMEOUT",
            retryable=True,
            **kwargs
        )
        self.worker_id = worker_id
        if worker_id:
            self._set_detail("worker_id", worker_id)
        if timeout is not None:
            self._set_detail("heartbeat_timeout", timeout)


class SchedulerConfigError(ScrapeboardError):
    """Error raised when a plugin's schedule expression cannot be resolved."""

    def __init__(self, message: str, expression: Optional[str] = None, plugin_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.SCHEDULER,
            severity=ErrorSeverity.HIGH,
            error_code="SCHEDULE_ERROR",
            retryable=False,
            **kwargs
        )
        self.expression = expression
        if expression is not None:
            self._set_detail("expression", expression)
        if plugin_id:
            self._set_detail("plugin_id", plugin_id)


class ConfigurationError(ScrapeboardError):
    """Error raised when configuration is invalid."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            error_code="CONFIGURATION_ERROR",
            retryable=False,
            **kwargs
        )
        if config_key:
            self._set_detail("config_key", config_key)


class JobCancelled(ScrapeboardError):
    """Raised inside a running job when cancellation was requested."""

    def __init__(self, message: str = "Job cancelled", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLATION,
            severity=ErrorSeverity.LOW,
            error_code="CANCELLED",
            retryable=False,
            **kwargs
        )


class ErrorHandler:
    """Centralized error tracking and logging."""

    def __init__(self, max_recent_errors: int = 100):
        self.error_count: int = 0
        self.recent_errors: List[Dict[str, Any]] = []
        self.max_recent_errors = max_recent_errors
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, datetime] = {}

    def handle_error(
        self,
        error: Union[Exception, ErrorInfo],
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Handle and categorize an error.

        Args:
            error: Exception or ErrorInfo to handle
            context: Optional error context

        Returns:
            ErrorInfo with details
        """
        if isinstance(error, ErrorInfo):
            error_info = error
        elif isinstance(error, ScrapeboardError):
            error_info = error.to_error_info()
            if context and not error_info.context:
                error_info.context = context
        else:
            error_info = self._categorize_generic_error(error, context)

        self._track_error(error_info)
        self._log_error(error_info)
        return error_info

    def _categorize_generic_error(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Categorize an exception that is not a ScrapeboardError."""
        error_type = error.__class__.__name__
        message = str(error)

        category = ErrorCategory.SYSTEM
        severity = ErrorSeverity.MEDIUM
        retryable = False

        if isinstance(error, (TimeoutError, ConnectionError)):
            category = ErrorCategory.FETCH
            retryable = True
        elif isinstance(error, PermissionError):
            category = ErrorCategory.PERSISTENCE
            severity = ErrorSeverity.HIGH
        elif isinstance(error, ValueError):
            category = ErrorCategory.VALIDATION
            severity = ErrorSeverity.LOW

        return ErrorInfo(
            error_type=error_type,
            message=message,
            category=category,
            severity=severity,
            context=context,
            traceback=traceback.format_exc(),
            retryable=retryable
        )

    def _track_error(self, error_info: ErrorInfo) -> None:
        """Track error occurrences."""
        self.error_count += 1

        error_record = {
            "error_type": error_info.error_type,
            "message": error_info.message,
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "context": error_info.context.to_dict() if error_info.context else None,
            "timestamp": error_info.timestamp.isoformat(),
            "retryable": error_info.retryable,
        }

        # Newest first
        self.recent_errors.insert(0, error_record)
        if len(self.recent_errors) > self.max_recent_errors:
            self.recent_errors = self.recent_errors[:self.max_recent_errors]

        error_key = f"{error_info.category.value}:{error_info.error_type}"
        self.error_counts[error_key] = self.error_counts.get(error_key, 0) + 1
        self.last_errors[error_key] = error_info.timestamp

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error based on severity."""
        logger = get_logger(__name__)
        log_message = f"{error_info.error_type}: {error_info.message}"

        if error_info.context:
            context_info = f" (operation: {error_info.context.operation}"
            if error_info.context.plugin_id:
                context_info += f", plugin: {error_info.context.plugin_id}"
            if error_info.context.job_id:
                context_info += f", job: {error_info.context.job_id}"
            context_info += ")"
            log_message += context_info

        if error_info.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
        elif error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.MEDIUM):
            logger.error(log_message)
        else:
            logger.info(log_message)

        if error_info.traceback and error_info.severity in [ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]:
            logger.debug(f"Traceback for {error_info.error_type}:\n{error_info.traceback}")

    def should_retry(
        self,
        error: Union[Exception, ErrorInfo],
        attempt: int,
        max_attempts: int = 3
    ) -> bool:
        """Determine if an operation should be retried.

        Args:
            error: Error that occurred
            attempt: Current attempt number (1-based)
            max_attempts: Maximum number of attempts

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= max_attempts:
            return False

        if isinstance(error, (ErrorInfo, ScrapeboardError)):
            return error.retryable
        # Errors outside the taxonomy are treated as transient
        return True

    def calculate_retry_delay(
        self,
        attempt: int,
        config: Optional[RetryConfig] = None
    ) -> float:
        """Calculate delay before retry as ``base * exponential_base ** attempt``.

        Args:
            attempt: Number of the attempt that just failed (1-based)
            config: Retry configuration

        Returns:
            Delay in seconds, capped at ``config.max_delay``
        """
        if config is None:
            config = RetryConfig()

        delay = config.base_delay * (config.exponential_base ** attempt)
        return min(delay, config.max_delay)

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics."""
        error_types: Dict[str, int] = {}
        operations: Dict[str, int] = {}

        for error_record in self.recent_errors:
            error_type = error_record["error_type"]
            error_types[error_type] = error_types.get(error_type, 0) + 1

            if error_record["context"] and error_record["context"]["operation"]:
                operation = error_record["context"]["operation"]
                operations[operation] = operations.get(operation, 0) + 1

        return {
            "total_errors": self.error_count,
            "error_types": error_types,
            "operations": operations,
            "error_counts": dict(self.error_counts),
        }

    def clear_errors(self) -> None:
        """Clear error history."""
        self.error_count = 0
        self.recent_errors.clear()
        self.error_counts.clear()
        self.last_errors.clear()


# Global error handler instance
_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def handle_error(
    error: Union[Exception, ErrorInfo, str],
    context: Optional[ErrorContext] = None
) -> ErrorInfo:
    """Convenience function to handle an error."""
    if isinstance(error, str):
        error = ScrapeboardError(error)

    if context is None:
        context = ErrorContext(operation="unknown")

    return get_error_handler().handle_error(error, context)


def calculate_retry_delay(attempt: int, config: Optional[RetryConfig] = None) -> float:
    """Convenience function to calculate retry delay."""
    return get_error_handler().calculate_retry_delay(attempt, config)


def should_retry(error: BaseException, attempt: int, max_attempts: int) -> bool:
    """Convenience function to decide whether a failed attempt is retried."""
    return get_error_handler().should_retry(error, attempt, max_attempts)


def error_payload(error: BaseException) -> Dict[str, Any]:
    """Build the machine-readable error dict for any exception."""
    if isinstance(error, ScrapeboardError):
        return error.to_dict()
    return {
        "code": "INTERNAL_ERROR",
        "type": error.__class__.__name__,
        "message": str(error) or error.__class__.__name__,
        "details": {},
        "retryable": False,
    }
