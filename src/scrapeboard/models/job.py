"""Job model and lifecycle state machine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from ..foundation.clock import utcnow
from ..foundation.errors import JobStateError


class JobState(str, Enum):
    """Lifecycle states of a job."""
    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(int, Enum):
    """Job priorities (higher number = claimed first)."""
    NORMAL = 1
    HIGH = 2


class JobTrigger(str, Enum):
    """What created a job."""
    SCHEDULE = "schedule"
    MANUAL = "manual"


TERMINAL_STATES: FrozenSet[JobState] = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.CANCELLED,
})

# QUEUED from CLAIMED/RUNNING is only used by crash recovery; FAILED -> QUEUED is a retry.
ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.QUEUED: frozenset({JobState.CLAIMED, JobState.CANCELLED}),
    JobState.CLAIMED: frozenset({JobState.RUNNING, JobState.FAILED, JobState.CANCELLED, JobState.QUEUED}),
    JobState.RUNNING: frozenset({
        JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.QUEUED
    }),
    JobState.FAILED: frozenset({JobState.QUEUED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:16]}"


@dataclass
class Job:
    """One scheduled or manually triggered execution of a plugin."""
    plugin_id: str
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    priority: JobPriority = JobPriority.NORMAL
    trigger: JobTrigger = JobTrigger.SCHEDULE
    created_at: datetime = field(default_factory=utcnow)
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempt: int = 1
    max_attempts: int = 3
    items_processed: int = 0
    items_total: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, target: JobState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: JobState, now: Optional[datetime] = None) -> None:
        """Move the job to ``target``, updating timestamps and revision.

        Raises:
            JobStateError: If the transition is not part of the lifecycle
        """
        if not self.can_transition(target):
            raise JobStateError(
                f"Job {self.id} cannot move from {self.state.value} to {target.value}",
                current_state=self.state.value,
                target_state=target.value,
            )

        now = now or utcnow()
        if target == JobState.CLAIMED:
            self.next_attempt_at = None
        elif target == JobState.RUNNING:
            self.started_at = now
        elif target == JobState.QUEUED:
            self.worker_id = None
            self.started_at = None
            self.finished_at = None
            self.items_processed = 0
            self.items_total = None
        else:
            self.finished_at = now
            if target == JobState.SUCCEEDED:
                self.error = None
            if target != JobState.FAILED:
                self.next_attempt_at = None

        self.state = target
        self.revision += 1

    def copy(self) -> "Job":
        """Detached copy for readers outside the dispatcher lock."""
        return Job(**{name: getattr(self, name) for name in self.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary."""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "plugin_id": self.plugin_id,
            "state": self.state.value,
            "priority": "high" if self.priority == JobPriority.HIGH else "normal",
            "trigger": self.trigger.value,
            "created_at": iso(self.created_at),
            "scheduled_for": iso(self.scheduled_for),
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "items_processed": self.items_processed,
            "items_total": self.items_total,
            "error": self.error,
            "worker_id": self.worker_id,
            "next_attempt_at": iso(self.next_attempt_at),
            "revision": self.revision,
        }
