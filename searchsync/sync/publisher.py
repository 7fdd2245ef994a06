"""Bulk publisher for the search sink's document index endpoint."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import requests

from ..app_logging import scrub
from ..core.config import Settings
from ..core.errors import PublishError
from .models import SinkDocument


@dataclass(slots=True)
class PublishReceipt:
    index_name: str
    submitted: int
    status_code: int


class SearchPublisher:
    """POST batches of documents to ``/indexes/<name>/docs/index``."""

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _endpoint_url(self, index_name: str) -> str:
        endpoint = self.settings.search_endpoint
        if not endpoint:
            raise PublishError(
                "AZURE_SEARCH_ENDPOINT is not configured", retryable=False
            )
        return f"{endpoint.rstrip('/')}/indexes/{quote(index_name, safe='')}/docs/index"

    def _headers(self) -> dict[str, str]:
        if not self.settings.search_api_key:
            raise PublishError("AZURE_SEARCH_API_KEY is not configured", retryable=False)
        return {
            "Content-Type": "application/json",
            "api-key": self.settings.search_api_key,
        }

    @staticmethod
    def _rejected_keys(payload: Any) -> list[str]:
        if not isinstance(payload, dict):
            return []
        items = payload.get("value")
        if not isinstance(items, list):
            return []
        return [
            str(item.get("key"))
            for item in items
            if isinstance(item, dict) and item.get("status") is False
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def publish(
        self, documents: Sequence[SinkDocument], index_name: str
    ) -> PublishReceipt | None:
        """Submit ``documents`` as a single batch; returns ``None`` when empty."""

        if not documents:
            self.logger.info("no documents to index", extra={"connection": index_name})
            return None

        url = self._endpoint_url(index_name)
        headers = self._headers()
        body = {"value": [doc.to_payload() for doc in documents]}

        try:
            response = self.session.post(
                url,
                params={"api-version": self.settings.search_api_version},
                json=body,
                headers=headers,
                timeout=self.settings.search_timeout,
            )
        except requests.RequestException as exc:
            raise PublishError(
                f"search sink request failed: {exc}", retryable=True
            ) from exc

        status = response.status_code
        if status >= 400:
            try:
                detail: Any = scrub(response.json())
            except ValueError:
                detail = response.text[:500]
            raise PublishError(
                f"search sink returned HTTP {status}: {detail}",
                status_code=status,
                retryable=status >= 500 or status == 429,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        rejected = self._rejected_keys(payload)
        if rejected:
            raise PublishError(
                f"search sink rejected {len(rejected)} of {len(documents)} document(s)",
                status_code=status,
                retryable=False,
                failed_keys=rejected,
            )

        self.logger.info("indexed %d document(s) into %s", len(documents), index_name)
        return PublishReceipt(
            index_name=index_name, submitted=len(documents), status_code=status
        )


__all__ = ["PublishReceipt", "SearchPublisher"]
