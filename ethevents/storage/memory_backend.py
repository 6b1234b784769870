"""
In-memory storage backend.

Dict-based implementation of the Store interface for testing and development.
"""

from __future__ import annotations

from typing import Iterator, Optional

from ethevents.storage.store import Store


class MemoryBackend(Store):
    """In-memory storage backend using a Python dict."""

    def __init__(self, ready: bool = True) -> None:
        self._data: dict[bytes, bytes] = {}
        self._ready = ready

    @property
    def ready(self) -> bool:
        return self._ready

    def set_ready(self, ready: bool = True) -> None:
        self._ready = ready

    def get(self, key: bytes) -> Optional[bytes]:
        return self._data.get(key)

    def put(self, key: bytes, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: bytes) -> None:
        self._data.pop(key, None)

    def scan_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        # Snapshot so callers may mutate the store while iterating
        items = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        return iter(items)

    def __len__(self) -> int:
        return len(self._data)
