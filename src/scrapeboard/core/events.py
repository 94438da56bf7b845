"""Append-only event log with bounded history and live subscriptions."""

import asyncio
import csv
import io
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Union

from ..foundation.clock import Clock, utcnow
from ..foundation.config import get_config_manager
from ..foundation.errors import ValidationError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.events import EventFilter, EventLevel, EventSource, LogEvent

_MIRROR_LEVELS = {
    EventLevel.DEBUG: logging.DEBUG,
    EventLevel.INFO: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

EXPORT_FORMATS = ("json", "csv")


class Subscription:
    """Live view of the event log.

    Holds its own bounded queue. When the consumer falls behind the oldest
    queued events are dropped and a synthetic warning is delivered before
    the next event.
    """

    def __init__(self, event_log: "EventLog", event_filter: EventFilter, max_size: int):
        self._event_log = event_log
        self.filter = event_filter
        self.max_size = max_size
        self._queue: Deque[LogEvent] = deque()
        self._ready = asyncio.Event()
        self._pending_drops = 0
        self._last_dropped_seq = 0
        self.dropped = 0
        self.closed = False

    def _offer(self, event: LogEvent) -> None:
        if self.closed or not self.filter.matches(event):
            return
        if len(self._queue) >= self.max_size:
            lost = self._queue.popleft()
            self._last_dropped_seq = lost.seq
            self._pending_drops += 1
            self.dropped += 1
        self._queue.append(event)
        self._ready.set()

    def _drop_notice(self) -> LogEvent:
        count = self._pending_drops
        self._pending_drops = 0
        return LogEvent(
            seq=self._last_dropped_seq,
            timestamp=self._event_log.clock(),
            level=EventLevel.WARNING,
            source=EventSource(component="eventlog"),
            message=f"{count} events dropped for this subscriber",
            detail={"dropped": count, "synthetic": True},
        )

    def get_nowait(self) -> Optional[LogEvent]:
        """Next event, or None if nothing is queued."""
        if self._pending_drops:
            return self._drop_notice()
        if not self._queue:
            self._ready.clear()
            return None
        return self._queue.popleft()

    async def get(self, timeout: Optional[float] = None) -> Optional[LogEvent]:
        """Wait for the next event.

        Returns None on timeout or after the subscription is closed.
        """
        while True:
            event = self.get_nowait()
            if event is not None or self.closed:
                return event
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None

    def pending(self) -> int:
        return len(self._queue)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._ready.set()
            self._event_log.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventLog:
    """Leveled, sequence-numbered event stream.

    ``emit`` never blocks: history is a bounded deque that drops the oldest
    event on overflow, counting drops and periodically emitting a synthetic
    warning summary.
    """

    def __init__(
        self,
        buffer_size: Optional[int] = None,
        subscriber_queue_size: Optional[int] = None,
        drop_summary_every: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        config = get_config_manager()
        self.logger = get_logger(__name__)
        self.mirror = get_logger("scrapeboard.events")
        self.metrics = get_metrics_collector()
        self.clock = clock

        self.buffer_size = int(buffer_size or config.get_setting("events.buffer_size", 5000))
        self.subscriber_queue_size = int(
            subscriber_queue_size or config.get_setting("events.subscriber_queue_size", 1000)
        )
        self.drop_summary_every = max(1, int(
            drop_summary_every or config.get_setting("events.drop_summary_every", 100)
        ))

        self._history: Deque[LogEvent] = deque()
        self._subscribers: Set[Subscription] = set()
        self._seq = 0
        self._dropped = 0
        self._drops_since_summary = 0
        self._summarizing = False

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(
        self,
        level: Union[EventLevel, str],
        component: str,
        message: str,
        plugin_id: Optional[str] = None,
        job_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Append an event and fan it out to subscribers."""
        self._seq += 1
        event = LogEvent(
            seq=self._seq,
            timestamp=self.clock(),
            level=EventLevel.parse(level),
            source=EventSource(component=component, plugin_id=plugin_id, job_id=job_id),
            message=message,
            detail=dict(detail or {}),
        )
        self._append(event)

        self.mirror.log(
            _MIRROR_LEVELS[event.level],
            f"#{event.seq} [{component}{'/' + plugin_id if plugin_id else ''}"
            f"{'/' + job_id if job_id else ''}] {message}",
        )

        for subscription in list(self._subscribers):
            subscription._offer(event)

        if self._drops_since_summary >= self.drop_summary_every and not self._summarizing:
            self._emit_drop_summary()
        return event

    def _append(self, event: LogEvent) -> None:
        if len(self._history) >= self.buffer_size:
            self._history.popleft()
            self._dropped += 1
            self._drops_since_summary += 1
            self.metrics.increment_counter("events.dropped")
        self._history.append(event)

    def _emit_drop_summary(self) -> None:
        count = self._drops_since_summary
        self._drops_since_summary = 0
        self._summarizing = True
        try:
            self.emit(
                EventLevel.WARNING,
                "eventlog",
                f"Event history full: dropped {count} oldest events ({self._dropped} total)",
                detail={"dropped": count, "dropped_total": self._dropped, "synthetic": True},
            )
        finally:
            self._summarizing = False

    def query(self, event_filter: Optional[EventFilter] = None, limit: Optional[int] = None) -> List[LogEvent]:
        """Matching events in sequence order; with ``limit`` only the newest are kept."""
        event_filter = event_filter or EventFilter()
        matches = [event for event in self._history if event_filter.matches(event)]
        if limit is not None and limit >= 0:
            matches = matches[-limit:] if limit else []
        return matches

    def subscribe(self, event_filter: Optional[EventFilter] = None, replay: bool = True) -> Subscription:
        """Subscribe to matching events.

        Args:
            event_filter: Predicate for delivered events
            replay: Deliver the matching buffered history before live events
        """
        subscription = Subscription(self, event_filter or EventFilter(), self.subscriber_queue_size)
        if replay:
            for event in self.query(subscription.filter, limit=self.subscriber_queue_size):
                subscription._offer(event)
        self._subscribers.add(subscription)
        self.logger.debug(f"Event subscriber added ({len(self._subscribers)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def export(self, event_filter: Optional[EventFilter] = None, fmt: str = "json") -> str:
        """Render matching events as JSON or CSV.

        Raises:
            ValidationError: If the format is unknown
        """
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {fmt}", field="format")

        events = self.query(event_filter)
        if fmt == "json":
            return json.dumps([event.to_dict() for event in events], indent=2, default=str)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["seq", "timestamp", "level", "component", "plugin_id", "job_id", "message", "detail"])
        for event in events:
            writer.writerow([
                event.seq,
                event.timestamp.isoformat(),
                event.level.value,
                event.source.component,
                event.source.plugin_id or "",
                event.source.job_id or "",
                event.message,
                json.dumps(event.detail, sort_keys=True, default=str) if event.detail else "",
            ])
        return buffer.getvalue()

    def stats(self) -> Dict[str, Any]:
        return {
            "last_seq": self._seq,
            "retained": len(self._history),
            "dropped": self._dropped,
            "subscribers": len(self._subscribers),
            "buffer_size": self.buffer_size,
        }
