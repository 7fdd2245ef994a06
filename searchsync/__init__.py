"""Incremental change-log to search index synchronisation."""

from .__version__ import __version__

__all__ = ["__version__"]
