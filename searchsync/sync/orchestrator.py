"""Sync cycle orchestration.

One cycle walks every connection index and every config inside it, in order:

    FETCH -> TRANSFORM -> PUBLISH -> ADVANCE_CHECKPOINT

The checkpoint is written only after the publish stage succeeded, so a failed
or interrupted cycle re-fetches the same rows next time (at-least-once). Each
stage returns a :class:`StageOk` or :class:`StageFailed`; a failure ends that
config only. A failure to read a connection's configs ends that connection
only. Only discovery failures escape :meth:`SyncOrchestrator.run_cycle`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from ..core.config import Settings, get_settings
from ..core.errors import CheckpointWriteError, SyncError
from .changelog import ChangeLogSource, FetchResult
from .content import ContentProcessor, process_field_content
from .metadata import (
    ConfigScan,
    MetadataStore,
    advance_checkpoint,
    build_client,
    list_connections,
    list_sync_configs,
)
from .models import SyncConfig, format_watermark
from .publisher import SearchPublisher
from .transform import TransformResult, transform

T = TypeVar("T")


class Stage(str, Enum):
    READ_CONFIGS = "read_configs"
    FETCH = "fetch"
    TRANSFORM = "transform"
    PUBLISH = "publish"
    ADVANCE_CHECKPOINT = "advance_checkpoint"


class ConfigStatus(str, Enum):
    SYNCED = "synced"
    NO_CHANGES = "no_changes"
    FAILED = "failed"


@dataclass(slots=True)
class StageOk(Generic[T]):
    value: T


@dataclass(slots=True)
class StageFailed:
    stage: Stage
    error: Exception


StageResult = StageOk[T] | StageFailed


@dataclass(slots=True)
class ConfigOutcome:
    """What happened to one config during a cycle."""

    config_id: str | None
    table: str | None
    field: str | None
    status: ConfigStatus
    failed_stage: Stage | None = None
    error: Exception | None = None
    rows_fetched: int = 0
    documents_published: int = 0
    watermark: datetime | None = None


@dataclass(slots=True)
class ConnectionOutcome:
    connection: str
    configs: list[ConfigOutcome] = field(default_factory=list)
    error: Exception | None = None


@dataclass(slots=True)
class CycleReport:
    connections: list[ConnectionOutcome] = field(default_factory=list)

    @property
    def failures(self) -> list[tuple[str, ConfigOutcome | None]]:
        """Failed (connection, config) pairs; config is ``None`` for connection failures."""

        failed: list[tuple[str, ConfigOutcome | None]] = []
        for conn in self.connections:
            if conn.error is not None:
                failed.append((conn.connection, None))
            failed.extend(
                (conn.connection, outcome)
                for outcome in conn.configs
                if outcome.status is ConfigStatus.FAILED
            )
        return failed

    @property
    def ok(self) -> bool:
        return not self.failures

    def counts(self) -> dict[str, int]:
        outcomes = [o for conn in self.connections for o in conn.configs]
        return {
            "connections": len(self.connections),
            "configs": len(outcomes),
            "synced": sum(o.status is ConfigStatus.SYNCED for o in outcomes),
            "unchanged": sum(o.status is ConfigStatus.NO_CHANGES for o in outcomes),
            "failed": len(self.failures),
            "documents": sum(o.documents_published for o in outcomes),
        }


def _log_context(config: SyncConfig, stage: Stage | None = None) -> dict[str, Any]:
    context: dict[str, Any] = {
        "connection": config.connection,
        "table": config.table_name,
        "field": config.field_name,
        "config_id": config.id,
    }
    if stage is not None:
        context["stage"] = stage.value
    return context


class SyncOrchestrator:
    """Run fetch, transform, publish and checkpoint for every config."""

    def __init__(
        self,
        store: MetadataStore,
        source: ChangeLogSource,
        publisher: SearchPublisher,
        *,
        settings: Settings | None = None,
        processor: ContentProcessor = process_field_content,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.processor = processor
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    def _run_stage(
        self, stage: Stage, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> StageResult[T]:
        try:
            return StageOk(fn(*args, **kwargs))
        except Exception as exc:
            return StageFailed(stage, exc)

    def _failed(
        self, config: SyncConfig, failure: StageFailed, **counts: Any
    ) -> ConfigOutcome:
        extra = _log_context(config, failure.stage)
        if isinstance(failure.error, CheckpointWriteError):
            self.logger.error(
                "checkpoint write failed, rows will be re-delivered next cycle: %s",
                failure.error,
                extra=extra,
            )
        elif isinstance(failure.error, SyncError):
            self.logger.error(
                "error processing table: %s, field: %s: %s",
                config.table_name,
                config.field_name,
                failure.error,
                extra=extra,
            )
        else:
            self.logger.error(
                "unexpected error processing table: %s, field: %s",
                config.table_name,
                config.field_name,
                exc_info=failure.error,
                extra=extra,
            )
        return ConfigOutcome(
            config_id=config.id,
            table=config.table_name,
            field=config.field_name,
            status=ConfigStatus.FAILED,
            failed_stage=failure.stage,
            error=failure.error,
            **counts,
        )

    # ------------------------------------------------------------------
    # Per-config pipeline
    # ------------------------------------------------------------------

    def sync_config(self, config: SyncConfig) -> ConfigOutcome:
        """Sync one config; never raises."""

        fetched = self._run_stage(Stage.FETCH, self.source.fetch_changed_rows, config)
        if isinstance(fetched, StageFailed):
            return self._failed(config, fetched)
        fetch: FetchResult = fetched.value
        if not fetch.rows:
            self.logger.debug("no changes", extra=_log_context(config))
            return ConfigOutcome(
                config_id=config.id,
                table=config.table_name,
                field=config.field_name,
                status=ConfigStatus.NO_CHANGES,
            )
        rows_fetched = len(fetch.rows)

        transformed = self._run_stage(
            Stage.TRANSFORM,
            transform,
            fetch.rows,
            config.field_name,
            config.field_type,
            config.category,
            processor=self.processor,
            log=self.logger,
        )
        if isinstance(transformed, StageFailed):
            return self._failed(config, transformed, rows_fetched=rows_fetched)
        batch: TransformResult = transformed.value

        published = 0
        if batch.documents:
            index_name = config.sink_index(self.settings.tenant_prefix)
            outcome = self._run_stage(
                Stage.PUBLISH, self.publisher.publish, batch.documents, index_name
            )
            if isinstance(outcome, StageFailed):
                return self._failed(config, outcome, rows_fetched=rows_fetched)
            published = len(batch.documents)
        else:
            self.logger.info(
                "no documents to index, %d row(s) dropped", rows_fetched,
                extra=_log_context(config),
            )

        watermark = fetch.watermark
        advanced = self._run_stage(
            Stage.ADVANCE_CHECKPOINT, advance_checkpoint, self.store, config, watermark
        )
        if isinstance(advanced, StageFailed):
            return self._failed(
                config,
                advanced,
                rows_fetched=rows_fetched,
                documents_published=published,
            )

        self.logger.info(
            "synced %d row(s), published %d document(s), watermark %s",
            rows_fetched,
            published,
            format_watermark(watermark) if watermark else None,
            extra=_log_context(config),
        )
        return ConfigOutcome(
            config_id=config.id,
            table=config.table_name,
            field=config.field_name,
            status=ConfigStatus.SYNCED,
            rows_fetched=rows_fetched,
            documents_published=published,
            watermark=watermark if advanced.value else None,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def sync_connection(self, connection: str) -> ConnectionOutcome:
        """Sync every config of ``connection``; never raises."""

        result = ConnectionOutcome(connection=connection)
        scanned = self._run_stage(Stage.READ_CONFIGS, list_sync_configs, self.store, connection)
        if isinstance(scanned, StageFailed):
            result.error = scanned.error
            self.logger.error(
                "error processing index: %s: %s",
                connection,
                scanned.error,
                exc_info=not isinstance(scanned.error, SyncError),
                extra={"connection": connection, "stage": Stage.READ_CONFIGS.value},
            )
            return result

        scan: ConfigScan = scanned.value
        for rejected in scan.rejected:
            self.logger.error(
                "skipping config: %s",
                rejected,
                extra={"connection": connection, "stage": Stage.READ_CONFIGS.value},
            )
            result.configs.append(
                ConfigOutcome(
                    config_id=rejected.doc_id,
                    table=rejected.table,
                    field=rejected.field,
                    status=ConfigStatus.FAILED,
                    failed_stage=Stage.READ_CONFIGS,
                    error=rejected,
                )
            )

        for config in scan.configs:
            result.configs.append(self.sync_config(config))
        return result

    def run_cycle(self) -> CycleReport:
        """Run one full cycle; raises :class:`DiscoveryError` only."""

        prefix = self.settings.connection_prefix
        self.logger.info("fetching indices with prefix %s", prefix)
        connections = list_connections(self.store, prefix)

        report = CycleReport()
        if not connections:
            self.logger.info("no indices found with prefix %s", prefix)
            return report

        for connection in connections:
            report.connections.append(self.sync_connection(connection))

        counts = report.counts()
        self.logger.info(
            "cycle finished: %(connections)d connection(s), %(configs)d config(s), "
            "%(synced)d synced, %(unchanged)d unchanged, %(failed)d failed, "
            "%(documents)d document(s) published",
            counts,
        )
        return report


def run_once(settings: Settings | None = None) -> CycleReport:
    """Build collaborators from ``settings`` and run a single cycle."""

    settings = settings or get_settings()
    client = build_client(settings)
    publisher = SearchPublisher(settings)
    try:
        orchestrator = SyncOrchestrator(
            MetadataStore(client),
            ChangeLogSource(settings),
            publisher,
            settings=settings,
        )
        return orchestrator.run_cycle()
    finally:
        publisher.close()
        client.close()


__all__ = [
    "ConfigOutcome",
    "ConfigStatus",
    "ConnectionOutcome",
    "CycleReport",
    "Stage",
    "StageFailed",
    "StageOk",
    "SyncOrchestrator",
    "run_once",
]
