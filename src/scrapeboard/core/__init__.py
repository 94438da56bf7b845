"""Core layer components for Scrapeboard."""

from .dispatcher import Dispatcher, SlotResult
from .engine import Engine
from .events import EventLog, Subscription
from .execution import ExecutionResult, JobExecutionContext
from .extraction import ExtractionEngine, ExtractionOutcome
from .fetcher import Fetcher
from .registry import PluginRegistry
from .schedule import Schedule, parse_schedule
from .scheduler import JobScheduler
from .storage import StorageManager
from .workers import WorkerPool

__all__ = [
    "Dispatcher",
    "SlotResult",
    "Engine",
    "EventLog",
    "Subscription",
    "ExecutionResult",
    "JobExecutionContext",
    "ExtractionEngine",
    "ExtractionOutcome",
    "Fetcher",
    "PluginRegistry",
    "Schedule",
    "parse_schedule",
    "JobScheduler",
    "StorageManager",
    "WorkerPool",
]
