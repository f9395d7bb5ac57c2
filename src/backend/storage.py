"""
Key-value stores used to mirror demand-tracking state as JSON strings.
"""

from typing import Dict, Optional, Protocol

from db import get_conn


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryStore:
    """Process-local store. State is lost when the process exits."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class SqliteKeyValueStore:
    """
    Store backed by the kv_store table, so tracked activity survives
    restarts of the API process.
    """

    def get(self, key: str) -> Optional[str]:
        conn = get_conn()
        try:
            cur = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cur.fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        conn = get_conn()
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()
