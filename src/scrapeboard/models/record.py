"""Extracted record model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ExtractedRecord:
    """Structured output of applying a plugin's field rules to fetched content."""
    job_id: str
    plugin_id: str
    fields: Dict[str, Any]
    extracted_at: datetime
    index: int = 0
    attempt: int = 1
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "plugin_id": self.plugin_id,
            "attempt": self.attempt,
            "index": self.index,
            "fields": self.fields,
            "extracted_at": self.extracted_at.isoformat(),
        }
