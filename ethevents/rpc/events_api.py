"""
ethevents_ namespace JSON-RPC API handlers.

Exposes the orchestrator's latest snapshot, its status, and query switching.
"""

from __future__ import annotations

import logging
from typing import Optional

from ethevents.common.types import EventFilter, EventQuery
from ethevents.indexer.orchestrator import Orchestrator
from ethevents.rpc.server import INVALID_PARAMS, RPCError, RPCServer, parse_block_param

logger = logging.getLogger(__name__)


def _parse_query(params: dict, chain_id: int, current: EventQuery) -> EventQuery:
    if not isinstance(params, dict):
        raise RPCError(INVALID_PARAMS, "Query must be an object")
    try:
        event_filter = EventFilter(
            address=params.get("address"),
            event=params.get("event"),
            args=tuple(params.get("args") or ()),
        )
        return EventQuery(
            chain_id=chain_id,
            filter=event_filter,
            from_block=parse_block_param(params.get("fromBlock", current.from_block)),
            to_block=parse_block_param(params.get("toBlock", current.to_block)),
            return_in_order=bool(params.get("returnInOrder", False)),
            enabled=bool(params.get("enabled", True)),
        )
    except ValueError as e:
        raise RPCError(INVALID_PARAMS, str(e))


def register_events_api(rpc: RPCServer, orchestrator: Orchestrator) -> None:
    """Register all ethevents_ namespace methods."""

    @rpc.method("ethevents_getLogs")
    async def get_logs(which: Optional[str] = None) -> dict | list:
        snapshot = orchestrator.snapshot.to_rpc()
        if which is None:
            return snapshot
        if which not in ("all", "finalized"):
            raise RPCError(INVALID_PARAMS, f"Unknown log selection: {which!r}")
        return snapshot["logs"][which]

    @rpc.method("ethevents_status")
    async def status() -> dict:
        snapshot = orchestrator.snapshot
        result = orchestrator.status()
        result["isFetching"] = snapshot.is_fetching
        result["fractionFetched"] = snapshot.fraction_fetched
        return result

    @rpc.method("ethevents_setQuery")
    async def set_query(query: dict) -> dict:
        new_query = _parse_query(query, orchestrator.query.chain_id, orchestrator.query)
        changed = new_query.session_key != orchestrator.query.session_key
        orchestrator.set_query(new_query)
        logger.info("Query updated via RPC (session changed: %s)", changed)
        return {"sessionChanged": changed, "generation": orchestrator.session.generation}

    rpc.set_metrics_provider(orchestrator.metrics)
