"""Turn change-log rows into sink documents."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .content import ContentProcessor, process_field_content
from .models import ChangeRow, SinkDocument, sink_action_for

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransformResult:
    documents: list[SinkDocument] = field(default_factory=list)
    dropped: int = 0
    failed: int = 0


def transform(
    rows: Iterable[ChangeRow],
    field_name: str,
    field_type: str | None,
    category: str | None,
    *,
    processor: ContentProcessor = process_field_content,
    log: logging.Logger | None = None,
) -> TransformResult:
    """Build one :class:`SinkDocument` per row with non-empty content.

    Rows whose content is empty are dropped. Rows whose processing raises are
    logged and skipped; the rest of the batch is still returned.
    """

    log = log or logger
    result = TransformResult()
    for row in rows:
        try:
            content = processor(row.new_value, field_type)
            if not content:
                result.dropped += 1
                continue
            doc_id = str(row.row_id)
            result.documents.append(
                SinkDocument(
                    action=sink_action_for(row.action_type),
                    id=doc_id,
                    title=f"Default Title for Row {doc_id}",
                    content=content,
                    description=f"Default Description for Row {doc_id}",
                    image=None,
                    category=category,
                )
            )
        except Exception:
            result.failed += 1
            log.exception(
                "failed to process content for row %s",
                row.row_id,
                extra={"field": field_name},
            )
    return result


__all__ = ["TransformResult", "transform"]
