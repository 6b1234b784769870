"""
Core types for event-log retrieval: block ranges, segments, request statistics,
event logs, range fetch results, and the query/snapshot objects exchanged with callers.

Log-carrying types support JSON-RPC serialization via to_rpc() / from_rpc() and
cache serialization via to_json() / from_json().
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from eth_utils import decode_hex, encode_hex, is_address, to_int, to_normalized_address

from ethevents.common.crypto import encode_topic_value, event_topic


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNCONSTRAINED = "unconstrained"

BLOCK_TAGS = ("earliest", "latest", "safe", "finalized", "pending")

MaxBlocks = Union[int, Literal["unconstrained"]]
BlockParam = Union[int, str]

SUCCESS = "success"
FAILURE = "failure"


class InvalidRangeError(ValueError):
    """A block range with from > to or a negative bound."""


def _hex_or_none(value: Optional[str]) -> Optional[int]:
    return None if value is None else to_int(hexstr=value)


def _bytes_or_none(value: Optional[str]) -> Optional[bytes]:
    return None if value is None else decode_hex(value)


# ---------------------------------------------------------------------------
# Ranges
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlockRange:
    """Inclusive block span [from_block, to_block]."""
    from_block: int
    to_block: int

    def __post_init__(self) -> None:
        if self.from_block < 0 or self.to_block < 0:
            raise InvalidRangeError(
                f"negative block bound in range [{self.from_block}, {self.to_block}]"
            )
        if self.from_block > self.to_block:
            raise InvalidRangeError(
                f"from_block {self.from_block} > to_block {self.to_block}"
            )

    @property
    def num_blocks(self) -> int:
        return self.to_block - self.from_block + 1

    def contains(self, block_number: int) -> bool:
        return self.from_block <= block_number <= self.to_block

    def intersect(self, from_block: int, to_block: int) -> Optional[BlockRange]:
        """Clip [from_block, to_block] to this range, or None if they don't overlap."""
        if to_block < self.from_block or from_block > self.to_block:
            return None
        return BlockRange(max(from_block, self.from_block), min(to_block, self.to_block))


@dataclass(frozen=True)
class Segment:
    """A missing range; is_gap is False when it extends past the newest known block."""
    from_block: int
    to_block: int
    is_gap: bool

    @property
    def num_blocks(self) -> int:
        return self.to_block - self.from_block + 1


# ---------------------------------------------------------------------------
# Request statistics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestStat:
    """One attempted eth_getLogs request. Times are in milliseconds."""
    endpoint_id: str
    status: Literal["success", "failure"]
    request_time: float
    response_time: float
    num_blocks: int

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    @property
    def latency(self) -> float:
        return self.response_time - self.request_time


# ---------------------------------------------------------------------------
# Event logs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventLog:
    address: bytes
    topics: tuple[bytes, ...] = ()
    data: bytes = b""
    block_number: Optional[int] = None
    transaction_index: Optional[int] = None
    log_index: Optional[int] = None
    block_hash: Optional[bytes] = None
    transaction_hash: Optional[bytes] = None
    removed: bool = False

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (
            self.block_number if self.block_number is not None else -1,
            self.transaction_index if self.transaction_index is not None else -1,
            self.log_index if self.log_index is not None else -1,
        )

    def to_rpc(self) -> dict:
        def _opt_int(v: Optional[int]) -> Optional[str]:
            return None if v is None else hex(v)

        def _opt_bytes(v: Optional[bytes]) -> Optional[str]:
            return None if v is None else encode_hex(v)

        return {
            "address": encode_hex(self.address),
            "topics": [encode_hex(t) for t in self.topics],
            "data": encode_hex(self.data),
            "blockNumber": _opt_int(self.block_number),
            "transactionIndex": _opt_int(self.transaction_index),
            "logIndex": _opt_int(self.log_index),
            "blockHash": _opt_bytes(self.block_hash),
            "transactionHash": _opt_bytes(self.transaction_hash),
            "removed": self.removed,
        }

    @classmethod
    def from_rpc(cls, obj: dict) -> EventLog:
        return cls(
            address=decode_hex(obj["address"]),
            topics=tuple(decode_hex(t) for t in obj.get("topics", [])),
            data=decode_hex(obj.get("data") or "0x"),
            block_number=_hex_or_none(obj.get("blockNumber")),
            transaction_index=_hex_or_none(obj.get("transactionIndex")),
            log_index=_hex_or_none(obj.get("logIndex")),
            block_hash=_bytes_or_none(obj.get("blockHash")),
            transaction_hash=_bytes_or_none(obj.get("transactionHash")),
            removed=bool(obj.get("removed", False)),
        )


# ---------------------------------------------------------------------------
# Fetch results
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """Outcome of one range fetch, as returned by an endpoint and persisted in the cache."""
    from_block: int
    to_block: int
    logs: list[EventLog] = field(default_factory=list)
    finalized_block: int = -1
    stats: list[RequestStat] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.from_block > self.to_block:
            raise InvalidRangeError(
                f"from_block {self.from_block} > to_block {self.to_block}"
            )

    @property
    def num_blocks(self) -> int:
        return self.to_block - self.from_block + 1

    @property
    def is_finalized(self) -> bool:
        return self.to_block <= self.finalized_block

    def to_json(self) -> bytes:
        # Request stats are session-local and never persisted.
        return json.dumps({
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "finalizedBlock": self.finalized_block,
            "logs": [log.to_rpc() for log in self.logs],
        }, separators=(",", ":")).encode()

    @classmethod
    def from_json(cls, data: bytes) -> QueryResult:
        obj = json.loads(data)
        return cls(
            from_block=int(obj["fromBlock"]),
            to_block=int(obj["toBlock"]),
            finalized_block=int(obj["finalizedBlock"]),
            logs=[EventLog.from_rpc(log) for log in obj.get("logs", [])],
        )


# ---------------------------------------------------------------------------
# Filters and queries
# ---------------------------------------------------------------------------

def _normalize_address_set(address: Any) -> tuple[str, ...]:
    if address is None:
        return ()
    items = [address] if isinstance(address, str) else list(address)
    normalized = []
    for item in items:
        if not is_address(item):
            raise ValueError(f"invalid address: {item!r}")
        normalized.append(to_normalized_address(item))
    return tuple(sorted(set(normalized)))


@dataclass(frozen=True)
class EventFilter:
    """Contract address set, event signature and indexed-argument filters.

    ``args`` holds one entry per indexed argument: None (wildcard), a single value,
    or a list/tuple of alternatives. Values may be ints, addresses or 32-byte hex.
    """
    address: Union[None, str, tuple[str, ...]] = None
    event: Optional[str] = None
    args: tuple = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", _normalize_address_set(self.address))
        object.__setattr__(self, "args", tuple(
            tuple(a) if isinstance(a, (list, tuple)) else a for a in self.args
        ))
        if self.args and self.event is None:
            raise ValueError("indexed argument filters require an event signature")

    def rpc_address(self) -> Union[None, str, list[str]]:
        if not self.address:
            return None
        if len(self.address) == 1:
            return self.address[0]
        return list(self.address)

    def topics(self) -> list[Union[None, str, list[str]]]:
        if self.event is None:
            return []
        topics: list[Union[None, str, list[str]]] = [encode_hex(event_topic(self.event))]
        for arg in self.args:
            if arg is None:
                topics.append(None)
            elif isinstance(arg, tuple):
                topics.append([encode_topic_value(v) for v in arg])
            else:
                topics.append(encode_topic_value(arg))
        # Trailing wildcards are implied by eth_getLogs.
        while topics and topics[-1] is None:
            topics.pop()
        return topics

    def signature(self) -> str:
        """Canonical form identifying this filter in cache keys and session keys."""
        return json.dumps(
            {"address": list(self.address), "topics": self.topics()},
            separators=(",", ":"),
            sort_keys=True,
        )


@dataclass(frozen=True)
class EventQuery:
    chain_id: int
    filter: EventFilter
    from_block: BlockParam = "earliest"
    to_block: BlockParam = "latest"
    # Only return the first contiguous piece of logs, starting at from_block
    return_in_order: bool = False
    enabled: bool = True

    def __post_init__(self) -> None:
        for bound in (self.from_block, self.to_block):
            if isinstance(bound, str) and bound not in BLOCK_TAGS:
                raise ValueError(f"unknown block tag: {bound!r}")
        if isinstance(self.from_block, int) and isinstance(self.to_block, int):
            BlockRange(self.from_block, self.to_block)

    @property
    def session_key(self) -> tuple[int, str]:
        return (self.chain_id, self.filter.signature())


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

@dataclass
class EventsSnapshot:
    logs_all: list[EventLog] = field(default_factory=list)
    logs_finalized: list[EventLog] = field(default_factory=list)
    is_fetching: bool = True
    fraction_fetched: float = 0.0
    finalized_block: Optional[int] = None

    def to_rpc(self) -> dict:
        return {
            "logs": {
                "all": [log.to_rpc() for log in self.logs_all],
                "finalized": [log.to_rpc() for log in self.logs_finalized],
            },
            "isFetching": self.is_fetching,
            "fractionFetched": self.fraction_fetched,
            "finalizedBlock": None if self.finalized_block is None else hex(self.finalized_block),
        }
