"""
Range fetching — one eth_getLogs attempt for one seed, falling through the strategy.

Candidates are tried in rank order. Each clips the requested range to its own
capacity, and the first success wins. Every request, successful or not, yields a
RequestStat so the strategy can learn from it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Sequence, Union

import httpx

from ethevents.common.types import (
    FAILURE,
    SUCCESS,
    UNCONSTRAINED,
    EventFilter,
    InvalidRangeError,
    QueryResult,
    RequestStat,
)
from ethevents.indexer.strategy import AnnotatedEndpoint
from ethevents.transport.endpoint import EndpointError

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class FetchError(Exception):
    """A fetch attempt ended without logs; ``stats`` holds the requests it made."""

    def __init__(self, message: str, from_block: int, stats: list[RequestStat]) -> None:
        super().__init__(message)
        self.from_block = from_block
        self.stats = stats


class FetchFailedError(FetchError):
    """Every ranked endpoint failed for this range."""


class ChainMismatchError(FetchError):
    """A ranked endpoint serves a different chain than the query; the strategy is stale."""


def clip_to_block(from_block: int, to_block_max: int, candidate: AnnotatedEndpoint) -> int:
    """Largest to_block the candidate can serve. eth_getLogs bounds are inclusive."""
    if candidate.max_num_blocks == UNCONSTRAINED:
        return to_block_max
    return min(to_block_max, from_block + candidate.max_num_blocks - 1)


async def fetch_range(
    *,
    chain_id: int,
    event_filter: EventFilter,
    from_block: int,
    to_block_max: int,
    finalized_block: int,
    strategy: Sequence[AnnotatedEndpoint],
    clock: Callable[[], float] = _now_ms,
) -> QueryResult:
    """Fetch logs starting at ``from_block`` and ending at most at ``to_block_max``."""
    if to_block_max < from_block:
        raise InvalidRangeError(f"to_block_max {to_block_max} < from_block {from_block}")

    address = event_filter.rpc_address()
    topics = event_filter.topics()
    stats: list[RequestStat] = []

    for candidate in strategy:
        to_block = clip_to_block(from_block, to_block_max, candidate)

        if candidate.chain_id != chain_id:
            raise ChainMismatchError(
                f"outdated endpoint(s) -- need chain {chain_id}, got {candidate.chain_id} from {candidate.id}",
                from_block,
                stats,
            )

        num_blocks = to_block - from_block + 1
        request_time = clock()
        try:
            logs = await candidate.endpoint.get_logs(
                address=address,
                topics=topics,
                from_block=from_block,
                to_block=to_block,
                timeout=candidate.timeout,
                retry_count=candidate.retry_count,
                retry_delay=candidate.retry_delay,
            )
        except (EndpointError, httpx.HTTPError, asyncio.TimeoutError) as e:
            stats.append(RequestStat(candidate.id, FAILURE, request_time, clock(), num_blocks))
            logger.warning(
                "Failed to fetch %d->%d (%d blocks) with %s: %s",
                from_block, to_block, num_blocks, candidate.id, str(e) or type(e).__name__,
            )
            continue

        stats.append(RequestStat(candidate.id, SUCCESS, request_time, clock(), num_blocks))
        logger.debug(
            "Fetched %d->%d (%d blocks, %d logs) with %s",
            from_block, to_block, num_blocks, len(logs), candidate.id,
        )
        return QueryResult(
            from_block=from_block,
            to_block=to_block,
            logs=logs,
            finalized_block=finalized_block,
            stats=stats,
        )

    logger.warning(
        "Failed to fetch range starting at from_block %d -- all %d endpoint(s) errored",
        from_block, len(strategy),
    )
    raise FetchFailedError(
        f"failed to fetch range starting at from_block {from_block} -- all endpoints errored",
        from_block,
        stats,
    )
