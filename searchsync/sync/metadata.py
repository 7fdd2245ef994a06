"""Metadata store access: connection discovery, config reads and checkpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from elastic_transport import TransportError
from elasticsearch import ApiError, Elasticsearch
from elasticsearch.helpers import ScanError, scan

from ..core.config import Settings
from ..core.errors import CheckpointWriteError, ConfigReadError, DiscoveryError
from .models import SyncConfig, ensure_utc, format_watermark

logger = logging.getLogger(__name__)

_STORE_ERRORS = (ApiError, TransportError, ScanError)


def build_client(settings: Settings) -> Elasticsearch:
    """Create the Elasticsearch client holding connection configs."""

    kwargs: dict[str, Any] = {"verify_certs": settings.elasticsearch_verify_certs}
    if settings.elasticsearch_api_key:
        kwargs["api_key"] = settings.elasticsearch_api_key
    elif settings.elasticsearch_username:
        kwargs["basic_auth"] = (
            settings.elasticsearch_username,
            settings.elasticsearch_password or "",
        )
    return Elasticsearch(settings.elasticsearch_url, **kwargs)


class MetadataStore:
    """Thin wrapper over the Elasticsearch calls the poller needs."""

    def __init__(self, client: Elasticsearch):
        self.client = client

    def list_indices(self, prefix: str) -> list[str]:
        result = self.client.cat.indices(index=f"{prefix}*", format="json")
        names = [entry["index"] for entry in result if "index" in entry]
        return sorted(name for name in names if name.startswith(prefix))

    def search_all(self, index: str) -> list[dict[str, Any]]:
        hits = scan(self.client, index=index, query={"query": {"match_all": {}}})
        return [{"id": hit["_id"], "source": hit.get("_source") or {}} for hit in hits]

    def update_document_field(
        self, index: str, doc_id: str, fields: dict[str, Any]
    ) -> None:
        self.client.update(index=index, id=doc_id, doc=fields, refresh="wait_for")


@dataclass(slots=True)
class ConfigScan:
    """Configs read from one connection index."""

    connection: str
    configs: list[SyncConfig] = field(default_factory=list)
    rejected: list[ConfigReadError] = field(default_factory=list)


def list_connections(store: MetadataStore, prefix: str) -> list[str]:
    """Return every connection index whose name starts with ``prefix``."""

    try:
        return store.list_indices(prefix)
    except _STORE_ERRORS as exc:
        raise DiscoveryError(f"failed to list indices with prefix {prefix!r}: {exc}") from exc


def list_sync_configs(store: MetadataStore, connection: str) -> ConfigScan:
    """Read and validate all config documents of ``connection``.

    Store failures raise :class:`ConfigReadError` for the whole connection.
    Malformed documents are collected in ``rejected`` so their siblings still
    sync.
    """

    try:
        hits = store.search_all(connection)
    except _STORE_ERRORS as exc:
        raise ConfigReadError(
            f"failed to read config documents: {exc}", connection=connection
        ) from exc

    scan_result = ConfigScan(connection=connection)
    for hit in hits:
        try:
            scan_result.configs.append(SyncConfig.from_hit(connection, hit))
        except ConfigReadError as exc:
            scan_result.rejected.append(exc)
    return scan_result


def advance_checkpoint(
    store: MetadataStore, config: SyncConfig, watermark: datetime
) -> bool:
    """Persist ``watermark`` as the config's ``updatedAt``.

    Returns ``False`` without writing when the watermark would not move
    forward.
    """

    watermark = ensure_utc(watermark)
    if watermark <= config.cursor():
        logger.warning(
            "refusing to move watermark from %s to %s",
            format_watermark(config.cursor()),
            format_watermark(watermark),
            extra={
                "connection": config.connection,
                "table": config.table_name,
                "field": config.field_name,
                "config_id": config.id,
            },
        )
        return False

    value = format_watermark(watermark)
    try:
        store.update_document_field(config.connection, config.id, {"updatedAt": value})
    except _STORE_ERRORS as exc:
        raise CheckpointWriteError(
            f"failed to write updatedAt={value}: {exc}",
            connection=config.connection,
            table=config.table_name,
            field=config.field_name,
            doc_id=config.id,
        ) from exc
    logger.info(
        "updated updatedAt to %s",
        value,
        extra={"connection": config.connection, "config_id": config.id},
    )
    return True


__all__ = [
    "ConfigScan",
    "MetadataStore",
    "advance_checkpoint",
    "build_client",
    "list_connections",
    "list_sync_configs",
]
