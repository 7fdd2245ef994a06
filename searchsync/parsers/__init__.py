"""Helpers for turning stored field values into plain text."""

from __future__ import annotations

from .html import extract_html_text

__all__ = ["extract_html_text"]
