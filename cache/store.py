"""
cache/store.py -- SQLite-backed key/value store for client-local state.

Plays the role browser local storage plays for the dashboard: the last-known
profile, the demo-mode flag, the persisted auth session, the PKCE verifier and
the client-side rate-limit counters. Values are JSON documents.

Keys are process-global strings. Nothing here is authoritative; callers
reconcile with the backend once it is reachable. Two processes sharing the
same file are not coordinated.

Usage:
    cache = LocalCache()
    cache.set("clinic.currentUser", profile.to_dict())
    data = cache.get("clinic.currentUser")   # returns the value or None
    cache.delete("clinic.currentUser")
"""

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional, Union

_DEFAULT_DB = Path(__file__).resolve().parent.parent / "data" / "clinicdesk_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS local_state (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    stored_at   REAL NOT NULL,
    expires_at  REAL
);
"""


class LocalCache:
    def __init__(self, db_path: Union[str, Path] = _DEFAULT_DB) -> None:
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for key, or default if absent or expired."""
        row = self._conn.execute(
            "SELECT value, expires_at FROM local_state WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return default
        value, expires_at = row
        if expires_at is not None and time.time() > expires_at:
            self.delete(key)
            return default
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key, replacing any existing entry."""
        now = time.time()
        self._conn.execute(
            "INSERT OR REPLACE INTO local_state (key, value, stored_at, expires_at) VALUES (?, ?, ?, ?)",
            (key, json.dumps(value), now, now + ttl if ttl is not None else None),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM local_state WHERE key = ?", (key,))
        self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all entries past their expiry. Returns number of rows removed."""
        cursor = self._conn.execute(
            "DELETE FROM local_state WHERE expires_at IS NOT NULL AND expires_at < ?",
            (time.time(),),
        )
        self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
