"""Error taxonomy for a sync cycle.

Only :class:`DiscoveryError` is allowed to escape a cycle. Every other error is
caught by the orchestrator at connection or config granularity and logged.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for failures raised by sync components."""

    def __init__(
        self,
        message: str,
        *,
        connection: str | None = None,
        table: str | None = None,
        field: str | None = None,
        doc_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.connection = connection
        self.table = table
        self.field = field
        self.doc_id = doc_id

    def context(self) -> dict[str, Any]:
        """Return the non-empty context fields for structured logging."""

        values = {
            "connection": self.connection,
            "table": self.table,
            "field": self.field,
            "doc_id": self.doc_id,
        }
        return {k: v for k, v in values.items() if v is not None}

    def __str__(self) -> str:
        ctx = self.context()
        if not ctx:
            return self.message
        details = " ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{self.message} ({details})"


class DiscoveryError(SyncError):
    """The metadata catalog could not be listed; aborts the whole cycle."""


class ConfigReadError(SyncError):
    """A connection's sync configs could not be read or a document is malformed."""


class SourceQueryError(SyncError):
    """The change-log source could not be reached or queried."""


class PublishError(SyncError):
    """The sink rejected or did not acknowledge a batch."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
        failed_keys: list[str] | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.status_code = status_code
        self.retryable = retryable
        self.failed_keys = list(failed_keys or [])


class CheckpointWriteError(SyncError):
    """The new watermark could not be persisted; rows will be re-delivered."""


__all__ = [
    "SyncError",
    "DiscoveryError",
    "ConfigReadError",
    "SourceQueryError",
    "PublishError",
    "CheckpointWriteError",
]
