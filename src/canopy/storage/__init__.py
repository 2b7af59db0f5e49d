"""Canopy storage layer."""

from canopy.storage.base import StorageBackend, StoreUnavailableError
from canopy.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore", "StorageBackend", "StoreUnavailableError"]
