"""
Local device storage - a namespaced key/value store backed by SQLite.
Plays the role browser localStorage plays for a web widget: guest identity,
conversation mirrors and catalog cache blobs live here.

Every operation is best-effort. Storage errors are logged and swallowed so a
full disk or a locked database degrades to "no offline cache".
"""

import json
import os
import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.app_config import get_config
from utils.logging_config import get_logger


class LocalStore:
    """
    Key/value store with string values, mirroring the localStorage API.
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Initialize local store

        Args:
            db_path: Path to the SQLite file, or ":memory:" for a throwaway store
        """
        self.logger = get_logger(__name__)
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_database()

    def _init_database(self):
        """Open the connection and create the table; leaves the store disabled on failure"""
        try:
            if self.db_path != ":memory:":
                directory = os.path.dirname(self.db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)

            # UI thread and poll thread share one connection
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.execute('''
                CREATE TABLE IF NOT EXISTS local_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.commit()
            self._conn = conn
            self.logger.debug(f"Local store ready at {self.db_path}")

        except (sqlite3.Error, OSError) as e:
            self.logger.warning(f"Local storage unavailable ({self.db_path}): {e}")
            self._conn = None

    @property
    def available(self) -> bool:
        return self._conn is not None

    def get_item(self, key: str) -> Optional[str]:
        if self._conn is None:
            return None
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value FROM local_storage WHERE key = ?", (key,)
                ).fetchone()
            return row[0] if row else None
        except sqlite3.Error as e:
            self.logger.warning(f"Local storage read failed for {key}: {e}")
            return None

    def set_item(self, key: str, value: str) -> bool:
        if self._conn is None:
            return False
        try:
            with self._lock:
                self._conn.execute('''
                    INSERT INTO local_storage (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                ''', (key, str(value), datetime.now().isoformat()))
                self._conn.commit()
            return True
        except sqlite3.Error as e:
            self.logger.warning(f"Local storage write failed for {key}: {e}")
            return False

    def remove_item(self, key: str) -> None:
        if self._conn is None:
            return
        try:
            with self._lock:
                self._conn.execute("DELETE FROM local_storage WHERE key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error as e:
            self.logger.warning(f"Local storage delete failed for {key}: {e}")

    def keys(self, prefix: str = "") -> List[str]:
        if self._conn is None:
            return []
        try:
            with self._lock:
                rows = self._conn.execute("SELECT key FROM local_storage ORDER BY key").fetchall()
            return [row[0] for row in rows if row[0].startswith(prefix)]
        except sqlite3.Error as e:
            self.logger.warning(f"Local storage key listing failed: {e}")
            return []

    def get_json(self, key: str) -> Any:
        """Read and decode a JSON value; unparseable values read as None"""
        raw = self.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning(f"Discarding unparseable local value for {key}")
            return None

    def set_json(self, key: str, value: Any) -> bool:
        try:
            encoded = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            self.logger.warning(f"Value for {key} is not JSON serializable: {e}")
            return False
        return self.set_item(key, encoded)

    def close(self):
        if self._conn is None:
            return
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                self.logger.warning(f"Error closing local store: {e}")
            self._conn = None


# Open stores by database path
_local_stores: Dict[str, LocalStore] = {}
_stores_lock = threading.Lock()


def get_local_store(db_path: Optional[str] = None) -> LocalStore:
    """Get the shared local store for `db_path`, defaulting to the configured path"""
    db_path = db_path or get_config().storage.db_path
    with _stores_lock:
        store = _local_stores.get(db_path)
        if store is None:
            store = LocalStore(db_path)
            _local_stores[db_path] = store
        return store
