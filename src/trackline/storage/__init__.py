"""Storage layer: SQLite store, schema and blocked cache."""

from trackline.storage.sqlite_store import SQLiteStorage, open_storage

__all__ = ["SQLiteStorage", "open_storage"]
