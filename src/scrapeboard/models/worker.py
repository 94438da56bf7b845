"""Worker slot model."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..foundation.clock import utcnow


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DRAINING = "draining"
    OFFLINE = "offline"


@dataclass
class WorkerSlot:
    """A unit of concurrency that runs at most one job at a time.

    ``current_job_id`` is set exactly when ``status`` is BUSY.
    """
    id: str
    status: WorkerStatus = WorkerStatus.IDLE
    current_job_id: Optional[str] = None
    last_heartbeat: datetime = field(default_factory=utcnow)
    started_at: datetime = field(default_factory=utcnow)
    jobs_completed: int = 0
    jobs_failed: int = 0

    def snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Dictionary view for the workers panel."""
        now = now or utcnow()
        return {
            "id": self.id,
            "status": self.status.value,
            "current_job_id": self.current_job_id,
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "heartbeat_age": max(0.0, (now - self.last_heartbeat).total_seconds()),
            "started_at": self.started_at.isoformat(),
            "uptime": max(0.0, (now - self.started_at).total_seconds()),
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
        }
