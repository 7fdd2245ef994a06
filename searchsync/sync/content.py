"""Field content processing: raw column values to searchable text."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from ..parsers import extract_html_text

HTML_TYPES = {"html", "richtext", "rich_text"}
JSON_TYPES = {"json", "jsonb"}


class ContentProcessor(Protocol):
    def __call__(self, raw_value: Any, field_type: str | None) -> str | None: ...


def _scalar_text(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _json_lines(value: Any, prefix: str = "") -> list[str]:
    if isinstance(value, dict):
        lines: list[str] = []
        for key, item in value.items():
            label = f"{prefix}.{key}" if prefix else str(key)
            lines.extend(_json_lines(item, label))
        return lines
    if isinstance(value, list):
        lines = []
        for item in value:
            lines.extend(_json_lines(item, prefix))
        return lines
    if value is None or value == "":
        return []
    text = _scalar_text(value)
    return [f"{prefix}: {text}" if prefix else text]


def process_field_content(raw_value: Any, field_type: str | None) -> str | None:
    """Return the searchable text for ``raw_value`` or ``None`` when empty."""

    if raw_value is None:
        return None
    if isinstance(raw_value, (bytes, bytearray, memoryview)):
        raw_value = bytes(raw_value).decode("utf-8", errors="replace")

    kind = (field_type or "").strip().lower()
    if kind in HTML_TYPES:
        text = extract_html_text(str(raw_value))
    elif kind in JSON_TYPES:
        value = raw_value
        if isinstance(value, str):
            value = json.loads(value)
        text = "\n".join(_json_lines(value))
    else:
        text = _scalar_text(raw_value)

    text = text.strip()
    return text or None


__all__ = ["ContentProcessor", "process_field_content"]
