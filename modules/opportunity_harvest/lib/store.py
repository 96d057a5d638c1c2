"""
Persisted key-value store shared by every harvester and the merge registry.

One SQLite table, `kv(key, value JSON, updated_utc)`. Each call is a single
autocommit statement on a fresh connection: there are no multi-key
transactions, so concurrent read-modify-write cycles are last-write-wins.
"""

from __future__ import annotations

import contextlib
import json
import os
import sqlite3
from collections.abc import Iterable
from typing import Any

from .errors import StorageWriteError
from .logging_bridge import error as log_error
from .models import OpportunityRecord, SourceConfig
from .utils import now_iso

MERGED_KEY = "opportunities"
SOURCE_CONFIGS_KEY = "scraper_source_configs"


def collection_key(platform: str) -> str:
    """Namespaced per-platform collection key, e.g. 'featuredOpportunities'."""
    return f"{platform.strip().lower()}Opportunities"


class KeyValueStore:
    def __init__(self, sqlite_path: str) -> None:
        if not (sqlite_path or "").strip():
            raise ValueError("sqlite_path cannot be empty")
        self.sqlite_path = sqlite_path
        self._initialized = False

    # ---- raw access ---------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        self._init()
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            log_error({
                "component": "opportunity_harvest.store",
                "op": "get",
                "key": key,
                "error": "corrupt JSON value; treating as missing",
            })
            return default

    def set(self, key: str, value: Any) -> None:
        """Upsert one key. Any failure surfaces as StorageWriteError."""
        try:
            payload = json.dumps(value, ensure_ascii=False)
            self._init()
            with contextlib.closing(_connect(self.sqlite_path)) as conn:
                conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_utc) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_utc = excluded.updated_utc
                    """,
                    (key, payload, now_iso()),
                )
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            log_error({
                "component": "opportunity_harvest.store",
                "op": "set",
                "key": key,
                "sqlite_path": self.sqlite_path,
                "error": repr(e),
            })
            raise StorageWriteError(key, repr(e)) from e

    def delete(self, key: str) -> None:
        try:
            self._init()
            with contextlib.closing(_connect(self.sqlite_path)) as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except (sqlite3.Error, OSError) as e:
            raise StorageWriteError(key, repr(e)) from e

    def keys(self) -> list[str]:
        self._init()
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            return [r[0] for r in conn.execute("SELECT key FROM kv ORDER BY key")]

    # ---- typed helpers ------------------------------------------------------

    def load_records(self, key: str) -> list[OpportunityRecord]:
        """Decode a stored collection; malformed rows are skipped."""
        raw = self.get(key, default=[])
        if not isinstance(raw, list):
            return []
        out: list[OpportunityRecord] = []
        for row in raw:
            if isinstance(row, dict):
                out.append(OpportunityRecord.from_dict(row))
        return out

    def save_records(self, key: str, records: Iterable[OpportunityRecord]) -> None:
        self.set(key, [r.to_dict() for r in records])

    def append_records(self, platform: str, records: Iterable[OpportunityRecord]) -> int:
        """
        Merge `records` into the platform's collection (identity dedup, existing
        rows win) and stamp '<key>_lastUpdated'. Returns how many were added.
        """
        key = collection_key(platform)
        existing = self.load_records(key)
        seen = {r.key for r in existing}
        added: list[OpportunityRecord] = []
        for r in records:
            if r.key in seen:
                continue
            seen.add(r.key)
            added.append(r)
        if not added:
            return 0
        self.save_records(key, existing + added)
        self.set(f"{key}_lastUpdated", now_iso())
        return len(added)

    def load_source_configs(self) -> dict[str, SourceConfig]:
        raw = self.get(SOURCE_CONFIGS_KEY, default={})
        if not isinstance(raw, dict):
            return {}
        out: dict[str, SourceConfig] = {}
        for name, cfg in raw.items():
            if isinstance(cfg, dict):
                out[str(name)] = SourceConfig.from_dict(cfg)
        return out

    def save_source_configs(self, configs: dict[str, SourceConfig]) -> None:
        self.set(SOURCE_CONFIGS_KEY, {name: c.to_dict() for name, c in sorted(configs.items())})

    # ---- internal -----------------------------------------------------------

    def _init(self) -> None:
        if self._initialized:
            return
        _ensure_dir(self.sqlite_path)
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            _apply_pragmas(conn)
            _ensure_schema(conn)
        self._initialized = True


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    with contextlib.suppress(FileNotFoundError):
        os.remove(sqlite_path)


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode: every statement stands alone.
    return sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL,
          updated_utc TEXT NOT NULL
        );
        """
    )
