"""
Block-number resolution — turns symbolic block tags into concrete numbers.

Resolutions are cached for a refresh interval so that a tick loop can resolve
its bounds every iteration without hammering endpoints.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

from ethevents.common.types import BLOCK_TAGS, BlockParam, BlockRange
from ethevents.transport.endpoint import Endpoint, EndpointError

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT = 10_000.0  # ms


def _now_ms() -> float:
    return time.time() * 1000


class BlockNumberResolver:
    """Resolves block tags via eth_getBlockByNumber, trying endpoints in order."""

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        refresh_interval: float = 12_000.0,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.endpoints = list(endpoints)
        self.refresh_interval = refresh_interval
        self._clock = clock
        # tag -> (block number, resolved at ms)
        self._cache: dict[str, tuple[int, float]] = {}

    async def resolve_tag(self, tag: BlockParam) -> int:
        if isinstance(tag, int):
            return tag
        if tag not in BLOCK_TAGS:
            raise ValueError(f"unknown block tag: {tag!r}")
        if tag == "earliest":
            return 0

        cached = self._cache.get(tag)
        now = self._clock()
        if cached is not None and now - cached[1] < self.refresh_interval:
            return cached[0]

        number = await self._fetch_tag(tag)
        if cached is not None and number < cached[0]:
            # Never move backwards; a lagging endpoint must not shrink the range.
            number = cached[0]
        self._cache[tag] = (number, now)
        return number

    async def _fetch_tag(self, tag: str) -> int:
        last_error: Optional[Exception] = None
        for endpoint in self.endpoints:
            try:
                block = await endpoint.request(
                    "eth_getBlockByNumber", [tag, False], timeout=RESOLVE_TIMEOUT
                )
                if not isinstance(block, dict) or block.get("number") is None:
                    raise EndpointError(endpoint.id, f"no block number for tag {tag!r}")
                return int(block["number"], 16)
            except Exception as e:
                logger.debug("Failed to resolve %s via %s: %s", tag, endpoint.id, e)
                last_error = e
        raise EndpointError("resolver", f"could not resolve block tag {tag!r}: {last_error}")

    async def resolve(self, from_block: BlockParam, to_block: BlockParam) -> tuple[BlockRange, int]:
        """Return (required range, finalized block)."""
        start = await self.resolve_tag(from_block)
        end = await self.resolve_tag(to_block)
        finalized = await self.resolve_tag("finalized")
        return BlockRange(start, end), finalized
