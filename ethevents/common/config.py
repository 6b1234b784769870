"""
Engine tuning and endpoint configuration.

EngineConfig carries every constant used by the strategy, fetcher and
orchestrator. NetworkConfig describes the endpoints of one chain and is
loaded from a JSON file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ethevents.common.types import UNCONSTRAINED, MaxBlocks


DEFAULT_BLOCK_BINS: tuple[MaxBlocks, ...] = (1, 1_000, 2_000, 5_000, 10_000, UNCONSTRAINED)


# ---------------------------------------------------------------------------
# Engine tuning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineConfig:
    # Size classes, smallest first; the last one may be "unconstrained"
    block_bins: tuple[MaxBlocks, ...] = DEFAULT_BLOCK_BINS

    # Retry policy (delays in ms)
    ordinary_retries: int = 4          # bins that have succeeded before
    exploratory_retries: int = 1       # untested bins
    ordinary_retry_delay: float = 50.0
    exploratory_retry_delay: float = 50.0

    # Statistics
    lookback_window: float = 30_000.0  # ms
    ema_alpha: float = 0.8
    ucb_coefficient: float = 0.75      # 1.0 is standard, lower means less exploration
    ucb_unconstrained_blocks: int = 1_000_000
    latency_timeout_multiplier: float = 5.0
    ping_timeout_multiplier: float = 20.0

    # Scheduling
    stabilization_time: float = 1_000.0  # ms the leading strategy entry must stay put before batching
    requests_per_batch: int = 33
    max_requests_to_track: int = 512
    ping_refresh_interval: float = 30_000.0       # ms
    failed_seed_retry_interval: float = 1_000.0   # ms before a failed seed is retried regardless
    block_number_refresh_interval: float = 12_000.0  # ms
    tick_interval: float = 0.25                   # seconds

    # Log every known-range inconsistency instead of only the first
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.block_bins:
            raise ValueError("block_bins must not be empty")
        numeric = [b for b in self.block_bins if b != UNCONSTRAINED]
        if any(b <= 0 for b in numeric) or numeric != sorted(numeric):
            raise ValueError("block_bins must be positive and ascending")
        if UNCONSTRAINED in self.block_bins[:-1]:
            raise ValueError("'unconstrained' may only be the last block bin")
        if not 0.0 <= self.ema_alpha <= 1.0:
            raise ValueError("ema_alpha must be between 0 and 1")


DEFAULT_ENGINE_CONFIG = EngineConfig()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@dataclass
class EndpointConfig:
    url: str
    key: str = "http"
    # Per-request HTTP ceiling in seconds; the strategy's timeout normally fires first
    http_timeout: float = 60.0


@dataclass
class NetworkConfig:
    chain_id: int = 1
    endpoints: list[EndpointConfig] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> NetworkConfig:
        """Parse ``{"chainId": N, "endpoints": [{"url": ..., "key": ...}, ...]}``.

        Bare URL strings are accepted in place of endpoint objects.
        """
        endpoints: list[EndpointConfig] = []
        for item in data.get("endpoints", []):
            if isinstance(item, str):
                endpoints.append(EndpointConfig(url=item))
                continue
            if "url" not in item:
                raise ValueError(f"endpoint entry without url: {item!r}")
            endpoints.append(EndpointConfig(
                url=item["url"],
                key=item.get("key", "http"),
                http_timeout=float(item.get("httpTimeout", 60.0)),
            ))
        chain_id = data.get("chainId", 1)
        if isinstance(chain_id, str):
            chain_id = int(chain_id, 0)
        return cls(chain_id=chain_id, endpoints=endpoints)


def load_network_config(path: Union[str, Path]) -> NetworkConfig:
    with open(path) as f:
        return NetworkConfig.from_json(json.load(f))


def parse_block_arg(value: Optional[str], default: str) -> Union[int, str]:
    """Parse a CLI block bound: a tag, a decimal number, or 0x-hex."""
    if value is None:
        return default
    if value.startswith(("0x", "0X")):
        return int(value, 16)
    if value.isdigit():
        return int(value)
    return value
