"""
Device-local storage for the chat client.

A small key-value store for non-secret data that should survive between
runs, such as the profile of the last signed-in user. Nothing secret is
written here: the private key stays in memory for the lifetime of a session.
"""

import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Protocol


class DeviceStore(Protocol):
    """Opaque string key-value storage on this device"""

    def put(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...


class MemoryDeviceStore:
    """DeviceStore that lives only as long as the process"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def put(self, key: str, value: str):
        self._data[key] = value

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def delete(self, key: str):
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class SqliteDeviceStore:
    """
    DeviceStore backed by a SQLite file.

    One database per device, shared by every account used on it.
    """

    def __init__(self, storage_dir: str = "client_data", filename: str = "device.db"):
        """
        Initialize device storage.

        Args:
            storage_dir: Directory holding the database file
            filename: Database file name
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / filename
        self.db: Optional[sqlite3.Connection] = None
        self._init_database()

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self.db.commit()

    def _connection(self) -> sqlite3.Connection:
        if self.db is None:
            raise ValueError("Storage is closed")
        return self.db

    def put(self, key: str, value: str):
        db = self._connection()
        db.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value)
        )
        db.commit()

    def get(self, key: str) -> Optional[str]:
        cursor = self._connection().execute(
            "SELECT value FROM metadata WHERE key = ?", (key,)
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def delete(self, key: str):
        db = self._connection()
        db.execute("DELETE FROM metadata WHERE key = ?", (key,))
        db.commit()

    def keys(self) -> List[str]:
        cursor = self._connection().execute("SELECT key FROM metadata ORDER BY key")
        return [row[0] for row in cursor.fetchall()]

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
