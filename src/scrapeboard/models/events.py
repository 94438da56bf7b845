"""Event log models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class EventLevel(str, Enum):
    """Severity of a log event."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]

    @classmethod
    def parse(cls, value: Union[str, "EventLevel"]) -> "EventLevel":
        """Parse a level name, accepting ``warn`` and any case."""
        if isinstance(value, EventLevel):
            return value
        normalized = str(value).strip().lower()
        if normalized == "warn":
            normalized = "warning"
        return cls(normalized)


_LEVEL_RANKS = {
    EventLevel.DEBUG: 10,
    EventLevel.INFO: 20,
    EventLevel.WARNING: 30,
    EventLevel.ERROR: 40,
}


@dataclass(frozen=True)
class EventSource:
    component: str
    plugin_id: Optional[str] = None
    job_id: Optional[str] = None


@dataclass(frozen=True)
class LogEvent:
    """Immutable entry of the event log, totally ordered by ``seq``."""
    seq: int
    timestamp: datetime
    level: EventLevel
    source: EventSource
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "source": {
                "component": self.source.component,
                "plugin_id": self.source.plugin_id,
                "job_id": self.source.job_id,
            },
            "message": self.message,
            "detail": self.detail,
        }


@dataclass
class EventFilter:
    """Predicate over log events. Unset attributes match everything."""
    level: Optional[EventLevel] = None
    component: Optional[str] = None
    plugin_id: Optional[str] = None
    job_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    text: Optional[str] = None
    after_seq: Optional[int] = None

    def matches(self, event: LogEvent) -> bool:
        if self.level is not None and event.level.rank < self.level.rank:
            return False
        if self.component is not None and event.source.component != self.component:
            return False
        if self.plugin_id is not None and event.source.plugin_id != self.plugin_id:
            return False
        if self.job_id is not None and event.source.job_id != self.job_id:
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp > self.until:
            return False
        if self.after_seq is not None and event.seq <= self.after_seq:
            return False
        if self.text:
            needle = self.text.lower()
            haystack = " ".join(
                part for part in (
                    event.message,
                    event.source.component,
                    event.source.plugin_id,
                    event.source.job_id,
                ) if part
            ).lower()
            if needle not in haystack:
                return False
        return True
