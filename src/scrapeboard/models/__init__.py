"""Domain models for the Scrapeboard system."""

from .common import ErrorBody, ErrorResponse, PaginatedResponse, HealthCheck
from .events import EventLevel, EventSource, LogEvent, EventFilter
from .job import Job, JobState, JobPriority, JobTrigger, TERMINAL_STATES, ALLOWED_TRANSITIONS
from .plugin import (
    SourceType, ValueType, EmptyResultPolicy, FieldRule,
    PluginDefinition, Plugin, PluginChangeKind, PluginChanged
)
from .record import ExtractedRecord
from .worker import WorkerSlot, WorkerStatus

__all__ = [
    # Common
    "ErrorBody", "ErrorResponse", "PaginatedResponse", "HealthCheck",

    # Events
    "EventLevel", "EventSource", "LogEvent", "EventFilter",

    # Jobs
    "Job", "JobState", "JobPriority", "JobTrigger",
    "TERMINAL_STATES", "ALLOWED_TRANSITIONS",

    # Plugins
    "SourceType", "ValueType", "EmptyResultPolicy", "FieldRule",
    "PluginDefinition", "Plugin", "PluginChangeKind", "PluginChanged",

    # Records and workers
    "ExtractedRecord", "WorkerSlot", "WorkerStatus",
]
