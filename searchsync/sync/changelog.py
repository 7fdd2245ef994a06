"""Incremental reads from per-table change-log tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psycopg
from psycopg import conninfo as psycopg_conninfo
from psycopg import sql
from psycopg.rows import dict_row

from ..core.config import Settings
from ..core.errors import SourceQueryError
from .models import ChangeRow, SyncConfig


@dataclass(slots=True)
class FetchResult:
    """Rows changed after a config's cursor, oldest first."""

    cursor: datetime
    rows: list[ChangeRow] = field(default_factory=list)

    @property
    def watermark(self) -> datetime | None:
        """Change time of the newest row, the next cursor candidate."""

        if not self.rows:
            return None
        return self.rows[-1].change_time


class ChangeLogSource:
    """Query ``<table><suffix>`` for rows changed after a watermark."""

    def __init__(self, settings: Settings, *, logger: logging.Logger | None = None):
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_conninfo(self, config: SyncConfig) -> str:
        options: dict[str, Any] = {
            "host": config.host or self.settings.pg_host,
            "port": config.port or self.settings.pg_port,
            "dbname": config.database or self.settings.pg_database,
            "user": config.user or self.settings.pg_user,
            "password": config.password or self.settings.pg_password,
            "sslmode": self.settings.pg_sslmode,
            # change_time columns without a zone are read back as UTC
            "options": "-c TimeZone=UTC",
        }
        clean_opts = {k: v for k, v in options.items() if v is not None and v != ""}
        if not clean_opts.get("host") and not clean_opts.get("dbname"):
            raise SourceQueryError(
                "change-log source requires a host or database",
                connection=config.connection,
                table=config.table_name,
                field=config.field_name,
            )
        return psycopg_conninfo.make_conninfo(**clean_opts)

    def build_query(self, config: SyncConfig) -> sql.Composed:
        # unquoted names resolve lowercase in Postgres
        table_parts = [
            part.lower()
            for part in f"{config.table_name}{self.settings.changelog_suffix}".split(".")
        ]
        return sql.SQL(
            "SELECT row_id, change_time, new_value AS {field}, action_type "
            "FROM {table} "
            "WHERE change_time > %(cursor)s "
            "ORDER BY change_time ASC"
        ).format(
            field=sql.Identifier(config.field_name),
            table=sql.Identifier(*table_parts),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_changed_rows(self, config: SyncConfig) -> FetchResult:
        """Return rows of ``config``'s change-log newer than its watermark.

        A connection is opened for this call only and closed on every path.
        Rows are re-sorted by change time and anything not strictly after the
        cursor is discarded, so the last row is always the newest.
        """

        cursor = config.cursor()
        conninfo = self._resolve_conninfo(config)
        query = self.build_query(config)
        self.logger.info(
            "fetching changes after %s",
            cursor.isoformat(),
            extra={
                "connection": config.connection,
                "table": config.table_name,
                "field": config.field_name,
            },
        )

        try:
            with psycopg.connect(conninfo, row_factory=dict_row) as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, {"cursor": cursor})
                    records = list(cur)
        except psycopg.Error as exc:
            raise SourceQueryError(
                f"change-log query failed: {exc}",
                connection=config.connection,
                table=config.table_name,
                field=config.field_name,
            ) from exc

        rows = [
            ChangeRow(
                row_id=record["row_id"],
                change_time=record["change_time"],
                new_value=record.get(config.field_name),
                action_type=record.get("action_type"),
            )
            for record in records
        ]
        rows.sort(key=lambda row: row.change_time)
        fresh = [row for row in rows if row.change_time > cursor]
        if len(fresh) != len(rows):
            self.logger.warning(
                "discarded %d row(s) not newer than the cursor",
                len(rows) - len(fresh),
                extra={"table": config.table_name, "field": config.field_name},
            )
        return FetchResult(cursor=cursor, rows=fresh)


__all__ = ["ChangeLogSource", "FetchResult"]
