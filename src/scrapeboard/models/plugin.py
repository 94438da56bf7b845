"""Plugin definition models."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SourceType(str, Enum):
    """Kind of payload a plugin fetches."""
    HTML = "html"
    JSON = "json"


class ValueType(str, Enum):
    """How an extracted value is converted."""
    TEXT = "text"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    HTML = "html"
    RAW = "raw"


class EmptyResultPolicy(str, Enum):
    """What a run does when no field matched anything."""
    SUCCEED = "succeed"
    FAIL = "fail"


class FieldRule(BaseModel):
    """Extraction rule for a single field.

    ``selector`` is a CSS selector for HTML plugins and a dot/bracket path
    (``data.items[0].title``) for JSON plugins.
    """

    name: str = Field(min_length=1, max_length=128)
    selector: str
    value_type: ValueType = ValueType.TEXT
    attribute: Optional[str] = None
    multiple: bool = False

    model_config = ConfigDict(extra="forbid")

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field name must not be blank")
        return v

    @field_validator("selector")
    @classmethod
    def selector_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Selector must not be empty")
        return v


class PluginDefinition(BaseModel):
    """User-supplied plugin definition, as accepted by create and update."""

    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    target_url: str
    source_type: SourceType = SourceType.HTML
    fields: List[FieldRule] = Field(default_factory=list)
    schedule: str
    enabled: bool = False

    item_selector: Optional[str] = None
    fetch_timeout: Optional[float] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=100)
    empty_result_policy: EmptyResultPolicy = EmptyResultPolicy.SUCCEED
    headers: Dict[str, str] = Field(default_factory=dict)
    start_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v: str) -> str:
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("Target URL must be an http(s) URL with a hostname")
        return v

    @field_validator("schedule")
    @classmethod
    def schedule_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Schedule must not be empty")
        return v

    @field_validator("item_selector")
    @classmethod
    def blank_item_selector_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("start_at")
    @classmethod
    def start_at_as_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def check_fields(self) -> "PluginDefinition":
        names = [rule.name for rule in self.fields]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate field names: {', '.join(duplicates)}")
        if self.enabled and not self.fields:
            raise ValueError("A plugin needs at least one field before it can be enabled")
        return self


class Plugin(PluginDefinition):
    """A registered plugin."""

    id: str = Field(min_length=1, max_length=64)
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class PluginChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class PluginChanged:
    """Notification sent to registry listeners after every mutation."""
    plugin_id: str
    kind: PluginChangeKind
    plugin: Optional[Plugin] = None
    schedule_changed: bool = False
