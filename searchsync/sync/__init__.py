"""Components of the incremental sync cycle."""

from __future__ import annotations

from .changelog import ChangeLogSource, FetchResult
from .metadata import MetadataStore, advance_checkpoint, list_connections, list_sync_configs
from .models import ChangeRow, SinkDocument, SyncConfig
from .orchestrator import CycleReport, SyncOrchestrator, run_once
from .publisher import SearchPublisher
from .transform import transform

__all__ = [
    "ChangeLogSource",
    "ChangeRow",
    "CycleReport",
    "FetchResult",
    "MetadataStore",
    "SearchPublisher",
    "SinkDocument",
    "SyncConfig",
    "SyncOrchestrator",
    "advance_checkpoint",
    "list_connections",
    "list_sync_configs",
    "run_once",
    "transform",
]
