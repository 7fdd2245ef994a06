"""Pydantic models for sync configs, change-log rows and sink documents."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import ConfigReadError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    """Change-log actions known to the poller."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SinkAction(str, Enum):
    """Per-document actions understood by the search sink's bulk endpoint."""

    UPLOAD = "upload"
    MERGE_OR_UPLOAD = "mergeOrUpload"


def sink_action_for(action_type: Any) -> SinkAction:
    """Map a change-log action to a sink action.

    Only inserts are uploaded; every other action, DELETE included, is an
    upsert. Deletes are not propagated to the sink.
    """

    if str(action_type or "").strip().upper() == ActionType.INSERT.value:
        return SinkAction.UPLOAD
    return SinkAction.MERGE_OR_UPLOAD


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored watermark; returns ``None`` when absent or unparseable.

    Numbers are epoch milliseconds. Strings are ISO-8601, a trailing ``Z`` is
    accepted.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_watermark(value: datetime) -> str:
    """Render a watermark as ISO-8601 UTC with a ``Z`` suffix."""

    return ensure_utc(value).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Sync configuration
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """One table/field pair synchronised for a connection.

    Built from a document of a connection index. ``updated_at`` is the
    watermark; ``None`` means the config was never synced.
    """

    id: str
    connection: str
    table_name: str
    field_name: str
    field_type: Optional[str] = None
    category: Optional[str] = None
    coid: str
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    # Source connection overrides stored with the config document.
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    database: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("table_name")
    @classmethod
    def _check_table(cls, value: str) -> str:
        parts = value.split(".")
        if len(parts) > 2 or not all(_IDENTIFIER.match(part) for part in parts):
            raise ValueError(f"invalid table name {value!r}")
        return value

    @field_validator("field_name")
    @classmethod
    def _check_field(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"invalid field name {value!r}")
        return value

    @field_validator("coid")
    @classmethod
    def _check_coid(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("coid cannot be empty")
        return value.strip()

    @classmethod
    def from_hit(cls, connection: str, hit: dict[str, Any]) -> "SyncConfig":
        """Validate a ``{id, source}`` hit from the metadata store."""

        doc_id = hit.get("id")
        source = hit.get("source")
        if not isinstance(source, dict):
            raise ConfigReadError(
                "config document has no source", connection=connection, doc_id=doc_id
            )
        try:
            return cls.model_validate({**source, "id": doc_id, "connection": connection})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigReadError(
                f"malformed config document: {problems}",
                connection=connection,
                table=source.get("table_name"),
                field=source.get("field_name"),
                doc_id=doc_id,
            ) from exc

    def cursor(self) -> datetime:
        """Return the fetch cursor: the watermark, or the epoch when unset."""

        return self.updated_at or EPOCH

    def sink_index(self, prefix: str) -> str:
        return f"{prefix}{self.coid.lower()}"


# ---------------------------------------------------------------------------
# Change-log rows and sink documents
# ---------------------------------------------------------------------------


class ChangeRow(BaseModel):
    """A single change-log entry."""

    row_id: Any
    change_time: datetime
    new_value: Any = None
    action_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("change_time")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SinkDocument(BaseModel):
    """Document shape accepted by the search sink's bulk index endpoint."""

    action: SinkAction = Field(alias="@search.action")
    id: str
    title: str
    content: str
    description: str
    image: Optional[str] = None
    category: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


__all__ = [
    "ActionType",
    "ChangeRow",
    "EPOCH",
    "SinkAction",
    "SinkDocument",
    "SyncConfig",
    "format_watermark",
    "parse_timestamp",
    "sink_action_for",
]
