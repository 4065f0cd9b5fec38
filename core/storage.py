import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

log = logging.getLogger(__name__)


class KeyValueStore:
    """Namespaced string key/value map persisted in sqlite."""

    def __init__(self, path: Union[str, Path] = ":memory:", namespace: str = "default", *, conn: Optional[sqlite3.Connection] = None):
        self.namespace = namespace
        if conn is None:
            if str(path) != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
        self.conn = conn
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                  namespace TEXT NOT NULL,
                  key TEXT NOT NULL,
                  value TEXT NOT NULL,
                  PRIMARY KEY(namespace, key)
                )
                """
            )

    def namespaced(self, namespace: str) -> "KeyValueStore":
        """Return a view over the same database under another namespace."""
        view = KeyValueStore(namespace=namespace, conn=self.conn)
        view._lock = self._lock
        return view

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM kv WHERE namespace=? AND key=?",
                (self.namespace, key),
            ).fetchone()
        if row is None:
            return None
        return row[0]

    def set(self, key: str, value: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO kv(namespace, key, value) VALUES(?,?,?) "
                "ON CONFLICT(namespace, key) DO UPDATE SET value=excluded.value",
                (self.namespace, key, value),
            )

    def delete(self, key: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "DELETE FROM kv WHERE namespace=? AND key=?",
                (self.namespace, key),
            )

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as exc:  # pragma: no cover - shutdown path
            log.warning("failed to close store %s: %s", self.namespace, exc)
