"""
Segment planning — computes which parts of a required block range are still missing.

Given the required range and the ranges already fetched, returns the uncovered
spans chunked to a maximum size. Spans before or between known ranges are gaps;
the span after the last known range extends the data to newer blocks.
"""

from __future__ import annotations

import math
from typing import Mapping

from ethevents.common.types import UNCONSTRAINED, BlockRange, MaxBlocks, Segment


def merge_ranges(ranges: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Sort and merge overlapping or adjacent inclusive ranges."""
    merged: list[list[int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1] + 1:
            if end > merged[-1][1]:
                merged[-1][1] = end
        else:
            merged.append([start, end])
    return [(start, end) for start, end in merged]


def get_remaining_segments(
    required_range: tuple[int, int],
    known_ranges: Mapping[int, int],
    max_num_blocks: MaxBlocks,
    max_num_segments: float = math.inf,
) -> list[Segment]:
    """Return the missing segments of ``required_range`` in ascending order.

    ``known_ranges`` maps a start block to its inclusive end block. Each segment is at
    most ``max_num_blocks`` long unless that is ``"unconstrained"``. Production stops
    as soon as ``max_num_segments`` segments exist.

    Raises InvalidRangeError if the required range has start > end.
    """
    required = BlockRange(*required_range)
    if max_num_blocks != UNCONSTRAINED and max_num_blocks <= 0:
        raise ValueError(f"max_num_blocks must be positive, got {max_num_blocks}")

    clipped = []
    for start, end in known_ranges.items():
        overlap = required.intersect(start, end)
        if overlap is not None:
            clipped.append((overlap.from_block, overlap.to_block))

    segments: list[Segment] = []
    current = required.from_block

    for known_start, known_end in merge_ranges(clipped):
        if current < known_start:
            _add_missing_range(current, known_start - 1, max_num_blocks, True, segments, max_num_segments)
        current = max(current, known_end + 1)
        if len(segments) >= max_num_segments:
            return segments

    if current <= required.to_block:
        _add_missing_range(current, required.to_block, max_num_blocks, False, segments, max_num_segments)

    return segments


def _add_missing_range(
    start: int,
    end: int,
    max_num_blocks: MaxBlocks,
    is_gap: bool,
    segments: list[Segment],
    max_num_segments: float,
) -> None:
    if max_num_blocks == UNCONSTRAINED:
        segments.append(Segment(start, end, is_gap))
        return

    chunk_start = start
    while chunk_start <= end and len(segments) < max_num_segments:
        chunk_end = min(chunk_start + max_num_blocks - 1, end)
        segments.append(Segment(chunk_start, chunk_end, is_gap))
        chunk_start = chunk_end + 1
