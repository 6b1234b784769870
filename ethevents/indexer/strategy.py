"""
Transport strategy — ranks (endpoint, request size) pairs for eth_getLogs.

Rolling statistics are kept per endpoint and per size class ("bin"): an
exponential moving average of reliability, latency and throughput over the
recent request history. Pairs are scored by observed throughput plus an
upper-confidence-bound exploration bonus for under-sampled large bins, and
annotated with a timeout and retry policy derived from the same statistics.

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ethevents.common.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from ethevents.common.types import UNCONSTRAINED, MaxBlocks, RequestStat
from ethevents.transport.endpoint import Endpoint


# ---------------------------------------------------------------------------
# Capability predicate
# ---------------------------------------------------------------------------

CapabilityPredicate = Callable[[str, MaxBlocks], bool]

# Hostname fragments of providers known to cap eth_getLogs at 10,000 blocks
CAPPED_PROVIDERS = ("drpc", "nodies.app", "mainnet.base.org", "lava.build")
CAPPED_PROVIDER_LIMIT = 10_000
UNLIMITED_PROVIDERS = ("alchemy", "tenderly.co")
NO_EVENTS_MARKER = "no-events"


def supports_num_blocks(endpoint_id: str, num_blocks: MaxBlocks) -> bool:
    """Default capability predicate, matching endpoint ids against known providers.

    Unrecognized endpoints are assumed capable; the statistics sort them out.
    """
    if NO_EVENTS_MARKER in endpoint_id:
        return False
    if any(p in endpoint_id for p in UNLIMITED_PROVIDERS):
        return True
    if any(p in endpoint_id for p in CAPPED_PROVIDERS):
        return num_blocks != UNCONSTRAINED and num_blocks <= CAPPED_PROVIDER_LIMIT
    return True


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class BinStats:
    success: int = 0
    failure: int = 0
    reliability_ema: float = 0.0
    latency_ema: float = 0.0
    throughput_ema: float = 0.0

    @property
    def samples(self) -> int:
        return self.success + self.failure


@dataclass
class StatsSummary:
    # endpoint id -> one entry per bin (None until that bin has a sample)
    bins: dict[str, list[Optional[BinStats]]] = field(default_factory=dict)
    total_requests: int = 0

    def get(self, endpoint_id: str, bin_idx: int) -> Optional[BinStats]:
        entry = self.bins.get(endpoint_id)
        return entry[bin_idx] if entry is not None else None


def ema(x: float, update: float, alpha: float) -> float:
    return alpha * x + (1 - alpha) * update


def bin_index(num_blocks: int, block_bins: Sequence[MaxBlocks]) -> int:
    """Index of the smallest bin that can hold ``num_blocks``."""
    for i, b in enumerate(block_bins):
        if b == UNCONSTRAINED or num_blocks <= b:
            return i
    return len(block_bins) - 1


def summarize_stats(
    request_stats: Sequence[RequestStat],
    now: float,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> StatsSummary:
    """Fold request stats from the lookback window into per-bin moving averages."""
    summary = StatsSummary()
    n_bins = len(config.block_bins)

    for r in sorted(request_stats, key=lambda s: s.request_time):
        if r.request_time < now - config.lookback_window:
            continue
        summary.total_requests += 1

        reliability = 1.0 if r.succeeded else 0.0
        latency = r.latency
        throughput = (r.num_blocks if r.succeeded else 0) / (latency + 1)

        entry = summary.bins.setdefault(r.endpoint_id, [None] * n_bins)
        idx = bin_index(r.num_blocks, config.block_bins)
        stats = entry[idx]
        if stats is None:
            stats = entry[idx] = BinStats(
                reliability_ema=reliability,
                latency_ema=latency,
                throughput_ema=throughput,
            )

        if r.succeeded:
            stats.success += 1
        else:
            stats.failure += 1
        stats.reliability_ema = ema(stats.reliability_ema, reliability, config.ema_alpha)
        stats.latency_ema = ema(stats.latency_ema, latency, config.ema_alpha)
        stats.throughput_ema = ema(stats.throughput_ema, throughput, config.ema_alpha)

    return summary


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnnotatedEndpoint:
    """An endpoint plus the request policy to use with it this tick (times in ms)."""
    endpoint: Endpoint
    timeout: float
    retry_count: int
    retry_delay: float
    max_num_blocks: MaxBlocks
    score: float

    @property
    def id(self) -> str:
        return self.endpoint.id

    @property
    def chain_id(self) -> int:
        return self.endpoint.chain_id

    def to_rpc(self) -> dict:
        return {
            "id": self.id,
            "maxNumBlocks": self.max_num_blocks,
            "timeout": self.timeout,
            "retryCount": self.retry_count,
            "retryDelay": self.retry_delay,
            "score": self.score if math.isfinite(self.score) else str(self.score),
        }


Strategy = list[AnnotatedEndpoint]


def ucb_bonus(
    max_num_blocks: MaxBlocks,
    timeout: float,
    total_requests: int,
    samples: int,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> float:
    """Upper-confidence-bound exploration term; infinite for a never-tried pair."""
    if samples == 0:
        return math.inf
    capacity = config.ucb_unconstrained_blocks if max_num_blocks == UNCONSTRAINED else max_num_blocks
    scaler = capacity / timeout
    return scaler * config.ucb_coefficient * math.sqrt(math.log(max(total_requests, 1)) / samples)


def _capacity_rank(max_num_blocks: MaxBlocks) -> float:
    return math.inf if max_num_blocks == UNCONSTRAINED else max_num_blocks


def get_strategy(
    endpoints: Sequence[Endpoint],
    request_stats: Sequence[RequestStat],
    ping: Optional[float],
    now: float,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
    capability: CapabilityPredicate = supports_num_blocks,
) -> Strategy:
    """Rank every capable (endpoint, bin) pair, best first.

    ``ping`` is the baseline round-trip time in ms; without one there is nothing
    to derive timeouts from and the strategy is empty.
    """
    if not ping:
        return []

    summary = summarize_stats(request_stats, now, config)
    n_bins = len(config.block_bins)
    strategy: Strategy = []

    for i in range(n_bins - 1, -1, -1):
        max_num_blocks = config.block_bins[i]

        for endpoint in endpoints:
            if not capability(endpoint.id, max_num_blocks):
                continue

            stats = summary.get(endpoint.id, i)
            successes = stats.success if stats else 0
            failures = stats.failure if stats else 0
            reliability = stats.reliability_ema if stats else 0.0
            latency = stats.latency_ema if stats else None
            throughput = stats.throughput_ema if stats else 0.0

            if i == 0 or (reliability > 0.5 and max_num_blocks != UNCONSTRAINED):
                retry_count = config.ordinary_retries
                retry_delay = config.ordinary_retry_delay
            else:
                retry_count = config.exploratory_retries
                retry_delay = config.exploratory_retry_delay

            if latency:
                timeout = latency * config.latency_timeout_multiplier
            else:
                timeout = ping * config.ping_timeout_multiplier

            score = throughput
            should_use_ucb = i > n_bins / 2 and (successes > 0 or failures < 3)
            if should_use_ucb:
                score += ucb_bonus(max_num_blocks, timeout, summary.total_requests, successes + failures, config)

            strategy.append(AnnotatedEndpoint(
                endpoint=endpoint,
                timeout=timeout,
                retry_count=retry_count,
                retry_delay=retry_delay,
                max_num_blocks=max_num_blocks,
                score=score,
            ))

    strategy.sort(key=lambda a: (-a.score, -_capacity_rank(a.max_num_blocks), a.timeout))
    return strategy
