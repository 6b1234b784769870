"""
Disk-based storage backend using LMDB.

Provides persistent key-value storage so fetched log ranges survive restarts.
Writes go straight to LMDB, each in its own write transaction.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional

import lmdb

from ethevents.storage.store import Store


# LMDB named databases
_DB_NAMES = [
    b"results",
]

# 1 GB default map size; LMDB grows sparse files
_DEFAULT_MAP_SIZE = 1 * 1024 * 1024 * 1024


class DiskBackend(Store):
    """LMDB-backed persistent storage."""

    def __init__(self, data_dir: Path, map_size: int = _DEFAULT_MAP_SIZE) -> None:
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)

        self._env = lmdb.open(
            str(self._data_dir / "eventdata"),
            max_dbs=len(_DB_NAMES),
            map_size=map_size,
        )
        self._db = self._env.open_db(b"results")
        self._closed = False

    @property
    def ready(self) -> bool:
        return not self._closed

    def close(self) -> None:
        """Close the LMDB environment."""
        if not self._closed:
            self._closed = True
            self._env.close()

    def get(self, key: bytes) -> Optional[bytes]:
        with self._env.begin(db=self._db) as txn:
            data = txn.get(key)
            return bytes(data) if data is not None else None

    def put(self, key: bytes, value: bytes) -> None:
        with self._env.begin(db=self._db, write=True) as txn:
            txn.put(key, value)

    def delete(self, key: bytes) -> None:
        with self._env.begin(db=self._db, write=True) as txn:
            txn.delete(key)

    def scan_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        items: list[tuple[bytes, bytes]] = []
        with self._env.begin(db=self._db) as txn:
            cursor = txn.cursor()
            if cursor.set_range(prefix):
                for key, value in cursor:
                    key = bytes(key)
                    if not key.startswith(prefix):
                        break
                    items.append((key, bytes(value)))
        return iter(items)
