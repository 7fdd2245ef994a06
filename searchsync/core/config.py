"""Runtime settings loaded from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache
from typing import Any

DEFAULT_CONNECTION_PREFIX = "datasource_postgresql_connection_"
DEFAULT_TENANT_PREFIX = "tenant_"
DEFAULT_CHANGELOG_SUFFIX = "_changelog"
DEFAULT_SEARCH_API_VERSION = "2021-04-30-Preview"

_SECRET_FIELDS = {"search_api_key", "elasticsearch_api_key", "elasticsearch_password", "pg_password"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclasses.dataclass(frozen=True)
class Settings:
    """Endpoints, credentials and naming conventions used by a sync cycle."""

    search_endpoint: str | None = None
    search_api_key: str | None = None
    search_api_version: str = DEFAULT_SEARCH_API_VERSION
    search_timeout: float = 30.0

    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_api_key: str | None = None
    elasticsearch_username: str | None = None
    elasticsearch_password: str | None = None
    elasticsearch_verify_certs: bool = True

    pg_host: str | None = None
    pg_port: int | None = None
    pg_user: str | None = None
    pg_password: str | None = None
    pg_database: str | None = None
    pg_sslmode: str = "require"

    connection_prefix: str = DEFAULT_CONNECTION_PREFIX
    tenant_prefix: str = DEFAULT_TENANT_PREFIX
    changelog_suffix: str = DEFAULT_CHANGELOG_SUFFIX

    def redacted(self) -> dict[str, Any]:
        """Return the settings as a dict with secrets masked."""

        data = dataclasses.asdict(self)
        for key in _SECRET_FIELDS:
            if data.get(key):
                data[key] = "***"
        return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment; nothing is required at load time."""

    return Settings(
        search_endpoint=os.getenv("AZURE_SEARCH_ENDPOINT"),
        search_api_key=os.getenv("AZURE_SEARCH_API_KEY"),
        search_api_version=os.getenv("AZURE_SEARCH_API_VERSION", DEFAULT_SEARCH_API_VERSION),
        search_timeout=float(os.getenv("AZURE_SEARCH_TIMEOUT", "30")),
        elasticsearch_url=os.getenv("ELASTICSEARCH_URL", "http://localhost:9200"),
        elasticsearch_api_key=os.getenv("ELASTICSEARCH_API_KEY"),
        elasticsearch_username=os.getenv("ELASTICSEARCH_USERNAME"),
        elasticsearch_password=os.getenv("ELASTICSEARCH_PASSWORD"),
        elasticsearch_verify_certs=_env_bool("ELASTICSEARCH_VERIFY_CERTS", True),
        pg_host=os.getenv("PGHOST"),
        pg_port=_env_int("PGPORT", None),
        pg_user=os.getenv("PGUSER"),
        pg_password=os.getenv("PGPASSWORD"),
        pg_database=os.getenv("PGDATABASE"),
        pg_sslmode=os.getenv("PGSSLMODE", "require"),
        connection_prefix=os.getenv("CONNECTION_INDEX_PREFIX", DEFAULT_CONNECTION_PREFIX),
        tenant_prefix=os.getenv("TENANT_INDEX_PREFIX", DEFAULT_TENANT_PREFIX),
        changelog_suffix=os.getenv("CHANGELOG_TABLE_SUFFIX", DEFAULT_CHANGELOG_SUFFIX),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "reset_settings_cache"]
