"""
Store interface — abstract key-value persistence for fetched log ranges.

Defines the byte-level contract (get / put / delete / prefix scan) implemented
by the in-memory and LMDB backends, and ResultCache, which persists
QueryResults keyed by a deterministic hash of (chain, filter signature, from block).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Iterator, Optional

from ethevents.common.crypto import cache_key, cache_key_prefix
from ethevents.common.types import QueryResult

logger = logging.getLogger(__name__)


class Store(ABC):
    """Abstract key-value storage.

    Implementations can be in-memory (testing), LMDB, or other backends.
    """

    @property
    def ready(self) -> bool:
        """Whether the backend can be read from and written to yet."""
        return True

    @abstractmethod
    def get(self, key: bytes) -> Optional[bytes]:
        """Get the value stored at key, or None if not found."""
        ...

    @abstractmethod
    def put(self, key: bytes, value: bytes) -> None:
        """Store or overwrite a value."""
        ...

    @abstractmethod
    def delete(self, key: bytes) -> None:
        """Remove a key. Removing a missing key is a no-op."""
        ...

    @abstractmethod
    def scan_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs whose key starts with prefix, in key order."""
        ...

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# QueryResult cache
# ---------------------------------------------------------------------------

class ResultCache:
    """Persisted QueryResults of one (chain, filter signature) pair."""

    def __init__(self, store: Store, chain_id: int, filter_signature: str) -> None:
        self.store = store
        self.chain_id = chain_id
        self.filter_signature = filter_signature
        self.prefix = cache_key_prefix(chain_id, filter_signature)

    def key_for(self, from_block: int) -> bytes:
        return cache_key(self.chain_id, self.filter_signature, from_block)

    def load_all(self) -> list[QueryResult]:
        results = []
        for key, value in self.store.scan_prefix(self.prefix):
            try:
                result = QueryResult.from_json(value)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping undecodable cached result %s: %s", key.hex()[:16], e)
                continue
            if self.key_for(result.from_block) != key:
                logger.warning("Skipping cached result stored under a foreign key %s", key.hex()[:16])
                continue
            results.append(result)
        return results

    def save(self, result: QueryResult) -> None:
        self.store.put(self.key_for(result.from_block), result.to_json())

    def delete(self, from_block: int) -> None:
        self.store.delete(self.key_for(from_block))

    def replace_all(self, results: Iterable[QueryResult]) -> int:
        """Write ``results`` then delete every other entry; returns the number deleted."""
        keep = set()
        for result in results:
            self.save(result)
            keep.add(self.key_for(result.from_block))
        stale = [key for key, _ in self.store.scan_prefix(self.prefix) if key not in keep]
        for key in stale:
            self.store.delete(key)
        return len(stale)
