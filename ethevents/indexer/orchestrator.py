"""
Orchestrator — drives incremental, adaptive retrieval of one event query.

Life cycle of a session (one per chain + filter signature):
  1. AWAITING_ENVIRONMENT: wait for the persistence layer to become usable.
  2. PRIMING_FROM_CACHE: read every persisted result, coalesce them, write the
     compacted set back, and seed known ranges from it. Request statistics start empty.
  3. STEADY, on every tick:
     a. resolve the required block range (block tags -> numbers)
     b. recompute the transport strategy from the request statistics
     c. plan missing segments and add them to the seeds, one at a time until the
        strategy's leading choice has been stable for a while, then in batches
     d. dispatch one fetch attempt per pending seed, concurrently
     e. fold finished attempts into known ranges and request statistics
     f. coalesce everything fetched and publish a snapshot of the logs

Fetch attempts are asyncio tasks. All session state is written only by the tick
(single writer), so no locking is needed. Changing the filter retires the session:
its in-flight attempts finish but are never folded into the new session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from ethevents.common.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from ethevents.common.types import (
    BlockRange,
    EventLog,
    EventQuery,
    EventsSnapshot,
    MaxBlocks,
    QueryResult,
    RequestStat,
)
from ethevents.indexer.coalesce import coalesce_results, combine, flatten_logs
from ethevents.indexer.fetcher import ChainMismatchError, FetchError, fetch_range
from ethevents.indexer.segments import get_remaining_segments, merge_ranges
from ethevents.indexer.strategy import (
    CapabilityPredicate,
    Strategy,
    get_strategy,
    supports_num_blocks,
)
from ethevents.storage.store import ResultCache, Store
from ethevents.transport.endpoint import Endpoint, EndpointError, measure_round_trip, unique_endpoints
from ethevents.transport.resolver import BlockNumberResolver

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class SessionState(Enum):
    AWAITING_ENVIRONMENT = "awaiting_environment"
    PRIMING_FROM_CACHE = "priming_from_cache"
    STEADY = "steady"


@dataclass
class Session:
    """Mutable state of one (chain, filter signature) pair."""
    key: tuple[int, str]
    generation: int
    cache: ResultCache
    state: SessionState = SessionState.AWAITING_ENVIRONMENT
    # Covered spans, merged: from_block -> to_block
    known_ranges: dict[int, int] = field(default_factory=dict)
    # from_block -> maximum to_block to try
    seeds: dict[int, int] = field(default_factory=dict)
    request_stats: list[RequestStat] = field(default_factory=list)
    stats_version: int = 0
    results: dict[int, QueryResult] = field(default_factory=dict)
    # Cached tentative results that must be fetched again
    stale: set[int] = field(default_factory=set)
    # from_block -> (stats version, strategy signature, time) at the time of failure
    failed: dict[int, tuple[int, tuple, float]] = field(default_factory=dict)
    inflight: dict[int, asyncio.Task] = field(default_factory=dict)


def _strategy_signature(strategy: Strategy) -> tuple:
    return tuple((a.id, a.max_num_blocks) for a in strategy)


def _known_ranges(results: Iterable[QueryResult]) -> dict[int, int]:
    return dict(merge_ranges([(r.from_block, r.to_block) for r in results]))


def _covers(known_ranges: dict[int, int], from_block: int, to_block: int) -> bool:
    return any(s <= from_block and to_block <= e for s, e in known_ranges.items())


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


def sorted_unique_logs(logs: Sequence[EventLog], required: BlockRange) -> list[EventLog]:
    """Logs inside ``required``, ordered by (block, transaction index, log index), deduplicated."""
    in_range = sorted(
        (log for log in logs if required.contains(log.block_number)),
        key=lambda log: log.sort_key,
    )
    unique: list[EventLog] = []
    for log in in_range:
        if unique and unique[-1].sort_key == log.sort_key:
            continue
        unique.append(log)
    return unique


def build_snapshot(
    results: Sequence[QueryResult], required: BlockRange, return_in_order: bool = False
) -> EventsSnapshot:
    coalesced = coalesce_results(results)
    pieces = combine(coalesced)

    covered = 0
    for piece in pieces:
        overlap = required.intersect(piece.from_block, piece.to_block)
        if overlap is not None:
            covered += overlap.num_blocks

    if return_in_order:
        pieces = [p for p in pieces if p.from_block <= required.from_block <= p.to_block]

    return EventsSnapshot(
        logs_all=sorted_unique_logs(flatten_logs(pieces), required),
        logs_finalized=sorted_unique_logs(flatten_logs(coalesced.finalized), required),
        # Pieces never overlap or touch, so full coverage means one piece spans the range
        is_fetching=covered != required.num_blocks,
        fraction_fetched=covered / required.num_blocks,
        finalized_block=coalesced.finalized[-1].finalized_block if coalesced.finalized else None,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Tick-driven retrieval of the logs matching one EventQuery."""

    def __init__(
        self,
        query: EventQuery,
        endpoints: Sequence[Endpoint],
        store: Store,
        *,
        resolver: Optional[BlockNumberResolver] = None,
        config: EngineConfig = DEFAULT_ENGINE_CONFIG,
        capability: CapabilityPredicate = supports_num_blocks,
        clock: Callable[[], float] = _now_ms,
        round_trip: Callable[[Sequence[Endpoint]], Awaitable[Optional[float]]] = measure_round_trip,
    ) -> None:
        self.query = query
        self.endpoints = unique_endpoints(endpoints)
        self.store = store
        self.config = config
        self.capability = capability
        self.resolver = resolver or BlockNumberResolver(
            self.endpoints, config.block_number_refresh_interval, clock
        )
        self._clock = clock
        self._round_trip = round_trip

        self._ping: Optional[float] = None
        self._ping_at = 0.0
        self._strategy: Strategy = []
        self._leading_max_blocks: Optional[MaxBlocks] = None
        self._strategy_updated_at = clock()

        self._required: Optional[BlockRange] = None
        self._finalized_block: Optional[int] = None
        self._snapshot = EventsSnapshot()
        self._subscribers: list[Callable[[EventsSnapshot], None]] = []
        self._stopped = False

        self._session = self._new_session(generation=0)

    # -----------------------------------------------------------------
    # Public accessors
    # -----------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def snapshot(self) -> EventsSnapshot:
        return self._snapshot

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    @property
    def required_range(self) -> Optional[BlockRange]:
        return self._required

    def subscribe(self, callback: Callable[[EventsSnapshot], None]) -> Callable[[], None]:
        """Call ``callback`` with every new snapshot. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -----------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------

    def _new_session(self, generation: int) -> Session:
        chain_id, signature = self.query.session_key
        return Session(
            key=self.query.session_key,
            generation=generation,
            cache=ResultCache(self.store, chain_id, signature),
        )

    def set_query(self, query: EventQuery) -> None:
        """Switch to a new query, retiring the session if the chain or filter changed."""
        old_key = self.query.session_key
        self.query = query
        if query.session_key == old_key:
            return

        retired = self._session
        for task in retired.inflight.values():
            task.add_done_callback(_consume_result)
        logger.info(
            "Filter changed; retiring session %d with %d in-flight request(s)",
            retired.generation, len(retired.inflight),
        )
        self._session = self._new_session(generation=retired.generation + 1)
        self._leading_max_blocks = None
        self._strategy_updated_at = self._clock()
        self._strategy = []
        self._required = None
        self._snapshot = EventsSnapshot()

    # -----------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------

    async def tick(self) -> EventsSnapshot:
        session = self._session
        if not self.query.enabled:
            return self._snapshot

        if session.state is SessionState.AWAITING_ENVIRONMENT:
            if not self.store.ready:
                return self._snapshot
            self._transition(session, SessionState.PRIMING_FROM_CACHE)

        if session.state is SessionState.PRIMING_FROM_CACHE:
            self._prime(session)
            self._transition(session, SessionState.STEADY)

        # (a) required range
        try:
            required, finalized_block = await self.resolver.resolve(
                self.query.from_block, self.query.to_block
            )
        except (EndpointError, asyncio.TimeoutError) as e:
            logger.warning("Could not resolve block range: %s", e)
            required, finalized_block = None, None
        if session is not self._session:
            return self._snapshot

        if required is not None:
            self._required = required
            self._finalized_block = finalized_block

            # (b) strategy
            strategy = await self._refresh_strategy(session)
            if session is not self._session:
                return self._snapshot

            # (c) seeds, (d) dispatch
            self._schedule_seeds(session, required, strategy)
            self._dispatch(session, finalized_block, strategy)

        # (e) fold
        self._fold_completed(session)

        # (f) publish
        if self._required is not None:
            self._publish(build_snapshot(
                list(session.results.values()), self._required, self.query.return_in_order
            ))
        return self._snapshot

    def _transition(self, session: Session, state: SessionState) -> None:
        logger.info("Session %d: %s -> %s", session.generation, session.state.value, state.value)
        session.state = state

    # -----------------------------------------------------------------
    # Priming
    # -----------------------------------------------------------------

    def _prime(self, session: Session) -> None:
        cached = session.cache.load_all()
        session.results = {}
        session.seeds = {}
        session.stale = set()
        session.request_stats = []
        session.failed = {}

        if cached:
            coalesced = coalesce_results(cached)
            # Tentative first so a finalized run sharing its from_block wins
            ordered = coalesced.tentative + coalesced.finalized
            removed = session.cache.replace_all(ordered)
            for result in coalesced.tentative:
                session.results[result.from_block] = result
                session.stale.add(result.from_block)
            for result in coalesced.finalized:
                session.results[result.from_block] = result
                session.stale.discard(result.from_block)
            for result in session.results.values():
                session.seeds[result.from_block] = result.to_block
            logger.info(
                "Primed %d finalized and %d tentative range(s) from %d cached result(s); %d superseded",
                len(coalesced.finalized), len(coalesced.tentative), len(cached), removed,
            )

        session.known_ranges = _known_ranges(session.results.values())

    # -----------------------------------------------------------------
    # Strategy and scheduling
    # -----------------------------------------------------------------

    async def _refresh_strategy(self, session: Session) -> Strategy:
        now = self._clock()
        if self._ping is None or now - self._ping_at > self.config.ping_refresh_interval:
            ping = await self._round_trip(self.endpoints)
            if ping is not None:
                self._ping = ping
                self._ping_at = now

        strategy = get_strategy(
            self.endpoints, session.request_stats, self._ping, now, self.config, self.capability
        )
        leader = strategy[0].max_num_blocks if strategy else None
        if leader != self._leading_max_blocks:
            logger.debug("Strategy leader changed: %s -> %s", self._leading_max_blocks, leader)
            self._leading_max_blocks = leader
            self._strategy_updated_at = now
        self._strategy = strategy
        return strategy

    def _schedule_seeds(self, session: Session, required: BlockRange, strategy: Strategy) -> None:
        if not strategy:
            return
        now = self._clock()
        stable = now - self._strategy_updated_at >= self.config.stabilization_time
        num_seeds = self.config.requests_per_batch if stable else 1

        segments = get_remaining_segments(
            (required.from_block, required.to_block),
            session.known_ranges,
            strategy[0].max_num_blocks,
            num_seeds,
        )
        created = 0
        for segment in segments:
            # Gaps must not overlap known data; the tail may run as far as the endpoint allows
            to_block_max = segment.to_block if segment.is_gap else required.to_block
            if session.seeds.get(segment.from_block) != to_block_max:
                session.seeds[segment.from_block] = to_block_max
                created += 1
                if created == num_seeds:
                    break

    def _dispatch(self, session: Session, finalized_block: int, strategy: Strategy) -> None:
        if not strategy:
            return
        now = self._clock()
        signature = _strategy_signature(strategy)
        for from_block, to_block_max in session.seeds.items():
            if from_block in session.inflight:
                continue
            if from_block not in session.stale and (
                from_block in session.results or _covers(session.known_ranges, from_block, from_block)
            ):
                continue
            failure = session.failed.get(from_block)
            if failure is not None:
                version, failed_signature, failed_at = failure
                unchanged = version == session.stats_version and failed_signature == signature
                if unchanged and now - failed_at < self.config.failed_seed_retry_interval:
                    continue
            session.inflight[from_block] = asyncio.create_task(fetch_range(
                chain_id=self.query.chain_id,
                event_filter=self.query.filter,
                from_block=from_block,
                to_block_max=to_block_max,
                finalized_block=finalized_block,
                strategy=strategy,
                clock=self._clock,
            ))

    # -----------------------------------------------------------------
    # Folding
    # -----------------------------------------------------------------

    def _fold_completed(self, session: Session) -> None:
        done = [(f, t) for f, t in session.inflight.items() if t.done()]
        if not done:
            return

        new_stats: list[RequestStat] = []
        failed: list[int] = []
        for from_block, task in done:
            del session.inflight[from_block]
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                result = task.result()
                new_stats.extend(result.stats)
                if from_block in session.stale:
                    self._keep_stale_remainder(session, from_block, result)
                session.results[from_block] = result
                session.stale.discard(from_block)
                session.failed.pop(from_block, None)
                session.cache.save(result)
            elif isinstance(exc, FetchError):
                new_stats.extend(exc.stats)
                failed.append(from_block)
                if isinstance(exc, ChainMismatchError):
                    logger.error("Stale strategy for seed %d: %s", from_block, exc)
                    self._ping = None
            else:
                raise exc

        if new_stats:
            merged = sorted(session.request_stats + new_stats, key=lambda s: s.request_time)
            session.request_stats = merged[-self.config.max_requests_to_track:]
            session.stats_version += 1

        signature = _strategy_signature(self._strategy)
        now = self._clock()
        for from_block in failed:
            session.failed[from_block] = (session.stats_version, signature, now)

        self._update_known_ranges(session)

    def _keep_stale_remainder(self, session: Session, from_block: int, fresh: QueryResult) -> None:
        """Re-key the part of a stale result that ``fresh`` did not reach, so coverage never shrinks."""
        stale = session.results.get(from_block)
        if stale is None or stale.to_block <= fresh.to_block:
            return
        remainder = QueryResult(
            fresh.to_block + 1,
            stale.to_block,
            [log for log in stale.logs if log.block_number > fresh.to_block],
            stale.finalized_block,
        )
        session.results[remainder.from_block] = remainder
        session.stale.add(remainder.from_block)
        session.seeds[remainder.from_block] = remainder.to_block
        session.cache.save(remainder)
        logger.debug(
            "Re-fetched %d->%d of stale range ending at %d; remainder kept",
            from_block, fresh.to_block, stale.to_block,
        )

    def _update_known_ranges(self, session: Session) -> None:
        old = session.known_ranges
        new = _known_ranges(session.results.values())
        if new == old:
            return

        for from_block, to_block in old.items():
            if _covers(new, from_block, to_block):
                continue
            if from_block in new:
                logger.warning(
                    "[from_block: %d] known range changed from [to_block: %d] to [to_block: %d]",
                    from_block, to_block, new[from_block],
                )
            else:
                logger.warning(
                    "[from_block: %d -> to_block: %d] was dropped from known block ranges.",
                    from_block, to_block,
                )
            if not self.config.debug:
                break

        session.known_ranges = new

    # -----------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------

    def _publish(self, snapshot: EventsSnapshot) -> None:
        if snapshot == self._snapshot:
            return
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")

    # -----------------------------------------------------------------
    # Running
    # -----------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for every in-flight attempt of the current session to finish."""
        pending = list(self._session.inflight.values())
        if pending:
            await asyncio.wait(pending)

    async def run(self) -> None:
        """Tick until stop() is called, waking early whenever an attempt finishes."""
        self._stopped = False
        while not self._stopped:
            await self.tick()
            pending = list(self._session.inflight.values())
            if pending:
                await asyncio.wait(
                    pending,
                    timeout=self.config.tick_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            else:
                await asyncio.sleep(self.config.tick_interval)

    def stop(self) -> None:
        self._stopped = True

    async def aclose(self) -> None:
        self.stop()
        pending = list(self._session.inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._session.inflight.clear()

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def status(self) -> dict:
        session = self._session
        return {
            "state": session.state.value,
            "generation": session.generation,
            "requiredRange": None if self._required is None else [
                self._required.from_block, self._required.to_block
            ],
            "finalizedBlock": self._finalized_block,
            "knownRanges": [[f, t] for f, t in sorted(session.known_ranges.items())],
            "pendingSeeds": len([f for f in session.seeds if f not in session.results or f in session.stale]),
            "inflight": len(session.inflight),
            "trackedRequests": len(session.request_stats),
            "strategy": [a.to_rpc() for a in self._strategy[:5]],
        }

    def metrics(self) -> dict[str, float | int]:
        session = self._session
        failures = sum(1 for s in session.request_stats if not s.succeeded)
        return {
            "ethevents_fraction_fetched": self._snapshot.fraction_fetched,
            "ethevents_is_fetching": int(self._snapshot.is_fetching),
            "ethevents_logs_total": len(self._snapshot.logs_all),
            "ethevents_known_ranges": len(session.known_ranges),
            "ethevents_inflight_requests": len(session.inflight),
            "ethevents_tracked_requests": len(session.request_stats),
            "ethevents_tracked_request_failures": failures,
        }
