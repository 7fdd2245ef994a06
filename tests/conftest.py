import logging
import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from searchsync.core.config import Settings, reset_settings_cache


@pytest.fixture
def settings() -> Settings:
    return Settings(
        search_endpoint="https://search.example.net",
        search_api_key="sink-key",
        pg_host="db.internal",
        pg_user="sync",
        pg_password="pw",
        pg_database="app",
    )


@pytest.fixture(autouse=True)
def _isolate_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clean_logger():
    logger = logging.getLogger("searchsync")
    logger.handlers.clear()
    yield logger
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
