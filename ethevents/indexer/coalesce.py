"""
Coalescing — normalizes a pile of range results into minimal non-overlapping runs.

Results are split at the finalized block they were fetched with, then merged into
two independent sequences: finalized (immutable) and tentative (reorganizable).
Adjacent results are concatenated. Where results overlap, the one fetched with the
higher finalized-block view supersedes the other over the overlapped span only.

Coalescing is idempotent: coalescing already-coalesced output reproduces it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ethevents.common.types import EventLog, QueryResult


@dataclass
class Coalesced:
    finalized: list[QueryResult] = field(default_factory=list)
    tentative: list[QueryResult] = field(default_factory=list)

    def __iter__(self):
        yield from self.finalized
        yield from self.tentative


def split_at_finalized(result: QueryResult) -> list[QueryResult]:
    """Split a result straddling its own finalized block into [from, fb] and [fb+1, to].

    Logs without a block number (pending logs) are dropped.
    """
    logs = [log for log in result.logs if log.block_number is not None]
    fb = result.finalized_block

    if result.to_block <= fb or result.from_block > fb:
        return [QueryResult(result.from_block, result.to_block, logs, fb)]

    finalized = QueryResult(result.from_block, fb, [], fb)
    tentative = QueryResult(fb + 1, result.to_block, [], fb)
    for log in logs:
        (finalized if log.block_number <= fb else tentative).logs.append(log)
    return [finalized, tentative]


def _absorb_overlap(last: QueryResult, piece: QueryResult) -> None:
    """Merge ``piece`` into ``last`` where piece.from_block <= last.to_block."""
    if last.finalized_block < piece.finalized_block:
        # Incoming logs take precedence over the overlapped span
        last.logs = (
            [log for log in last.logs if log.block_number < piece.from_block]
            + piece.logs
            + [log for log in last.logs if log.block_number > piece.to_block]
        )
    else:
        # Existing logs take precedence
        last.logs.extend(log for log in piece.logs if log.block_number > last.to_block)
    last.to_block = max(last.to_block, piece.to_block)


def coalesce_results(results: Iterable[QueryResult]) -> Coalesced:
    pieces = [p for r in results for p in split_at_finalized(r)]
    pieces.sort(key=lambda p: p.from_block)

    coalesced = Coalesced()
    for piece in pieces:
        is_finalized = piece.is_finalized
        seq = coalesced.finalized if is_finalized else coalesced.tentative
        last = seq[-1] if seq else None

        if last is None or last.to_block + 1 < piece.from_block:
            # Data covers a new range
            seq.append(QueryResult(
                piece.from_block,
                piece.to_block,
                list(piece.logs),
                piece.to_block if is_finalized else piece.from_block - 1,
            ))
        elif last.to_block + 1 == piece.from_block:
            # Data aligns perfectly with the previous range
            last.logs.extend(piece.logs)
            last.to_block = piece.to_block
            if is_finalized:
                last.finalized_block = last.to_block
        else:
            # Data overlaps the previous range or is entirely inside it
            _absorb_overlap(last, piece)
            if is_finalized:
                last.finalized_block = last.to_block

    return coalesced


def combine(coalesced: Coalesced) -> list[QueryResult]:
    """Interleave finalized and tentative runs into one ordered, non-overlapping list.

    Adjacent runs are concatenated; overlaps resolve the same way as in coalescing.
    """
    out: list[QueryResult] = []
    for piece in sorted(coalesced, key=lambda p: p.from_block):
        last = out[-1] if out else None
        if last is None or last.to_block + 1 < piece.from_block:
            out.append(QueryResult(piece.from_block, piece.to_block, list(piece.logs), piece.finalized_block))
        elif last.to_block + 1 == piece.from_block:
            last.logs.extend(piece.logs)
            last.to_block = piece.to_block
            last.finalized_block = max(last.finalized_block, piece.finalized_block)
        else:
            _absorb_overlap(last, piece)
            last.finalized_block = max(last.finalized_block, piece.finalized_block)
    return out


def flatten_logs(results: Iterable[QueryResult]) -> list[EventLog]:
    return [log for r in results for log in r.logs]
