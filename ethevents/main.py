"""
py-ethevents — adaptive Ethereum event-log retrieval engine.

Entry point for the node. Initializes all subsystems:
  1. Parse CLI arguments
  2. Load the endpoint configuration
  3. Initialize storage backend
  4. Start JSON-RPC server
  5. Run the retrieval orchestrator
  6. Handle graceful shutdown
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Union

from ethevents.common.config import (
    DEFAULT_ENGINE_CONFIG,
    EngineConfig,
    NetworkConfig,
    load_network_config,
    parse_block_arg,
)
from ethevents.common.types import EventFilter, EventQuery
from ethevents.indexer.orchestrator import Orchestrator
from ethevents.rpc.events_api import register_events_api
from ethevents.rpc.server import RPCServer
from ethevents.storage.disk_backend import DiskBackend
from ethevents.storage.memory_backend import MemoryBackend
from ethevents.storage.store import Store
from ethevents.transport.endpoint import endpoints_from_config


logger = logging.getLogger("ethevents")

WILDCARD_TOPICS = ("", "*", "null")


def parse_topic_arg(value: str) -> Union[None, str, list[str]]:
    """``*`` is a wildcard, ``a,b`` lists alternatives, anything else is one value."""
    value = value.strip()
    if value in WILDCARD_TOPICS:
        return None
    if "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


# ---------------------------------------------------------------------------
# Node class
# ---------------------------------------------------------------------------

class EventsNode:
    """Retrieval engine plus the JSON-RPC surface serving its output."""

    def __init__(
        self,
        network: NetworkConfig,
        query: EventQuery,
        data_dir: Optional[Path] = None,
        rpc_port: int = 8545,
        engine_config: EngineConfig = DEFAULT_ENGINE_CONFIG,
    ) -> None:
        self.network = network
        self.rpc_port = rpc_port

        # Initialize storage
        self.store: Store = DiskBackend(data_dir) if data_dir else MemoryBackend()

        self.endpoints = endpoints_from_config(network)
        self.orchestrator = Orchestrator(query, self.endpoints, self.store, config=engine_config)

        # RPC server
        self.rpc = RPCServer()
        register_events_api(self.rpc, self.orchestrator)

        self._orchestrator_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("Starting py-ethevents node")
        logger.info("  Chain ID: %d", self.network.chain_id)
        logger.info("  Endpoints: %d", len(self.endpoints))
        logger.info("  Filter: %s", self.orchestrator.query.filter.signature())
        logger.info("  RPC port: %d", self.rpc_port)

        import uvicorn
        config = uvicorn.Config(
            self.rpc.app,
            host="0.0.0.0",
            port=self.rpc_port,
            log_level="warning",
            loop="asyncio",
        )
        self._rpc_server = uvicorn.Server(config)
        self._rpc_server.config.setup_event_loop = lambda: None
        self._rpc_task = asyncio.create_task(self._rpc_server.serve())

        self._orchestrator_task = asyncio.create_task(self.orchestrator.run())
        self.orchestrator.subscribe(self._log_progress)
        logger.info("Node started successfully")

    def _log_progress(self, snapshot) -> None:
        logger.info(
            "Fetched %.1f%% (%d logs, %d finalized)",
            snapshot.fraction_fetched * 100, len(snapshot.logs_all), len(snapshot.logs_finalized),
        )

    async def stop(self) -> None:
        """Gracefully stop all subsystems."""
        logger.info("Shutting down...")

        await self.orchestrator.aclose()
        if self._orchestrator_task is not None:
            self._orchestrator_task.cancel()
            try:
                await self._orchestrator_task
            except asyncio.CancelledError:
                pass

        if hasattr(self, "_rpc_server"):
            self._rpc_server.should_exit = True

        for endpoint in self.endpoints:
            await endpoint.aclose()
        self.store.close()

        logger.info("Node stopped")

    async def run_until_stopped(self) -> None:
        """Run until shutdown signal is received or the orchestrator dies."""
        stop_event = asyncio.Event()

        def _signal_handler():
            stop_event.set()

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await self.start()
        stop_task = asyncio.create_task(stop_event.wait())
        await asyncio.wait({stop_task, self._orchestrator_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()

        failed = self._orchestrator_task.done() and not self._orchestrator_task.cancelled()
        error = self._orchestrator_task.exception() if failed else None
        await self.stop()
        if error is not None:
            raise error


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ethevents",
        description="Adaptive Ethereum event-log retrieval engine",
    )
    parser.add_argument(
        "--config",
        type=str,
        required=True,
        help='Path to endpoint config JSON ({"chainId": N, "endpoints": [...]})',
    )
    parser.add_argument(
        "--address",
        action="append",
        default=[],
        help="Contract address to filter on (repeatable)",
    )
    parser.add_argument(
        "--event",
        type=str,
        default=None,
        help="Event signature, e.g. Transfer(address,address,uint256)",
    )
    parser.add_argument(
        "--topic",
        action="append",
        default=[],
        help="Indexed argument filter in position order; '*' is a wildcard, 'a,b' lists alternatives (repeatable)",
    )
    parser.add_argument(
        "--from-block",
        type=str,
        default=None,
        help="First block: number, 0x-hex or tag (default: earliest)",
    )
    parser.add_argument(
        "--to-block",
        type=str,
        default=None,
        help="Last block: number, 0x-hex or tag (default: latest)",
    )
    parser.add_argument(
        "--in-order",
        action="store_true",
        help="Only emit logs once every block from --from-block onwards has been fetched",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="LMDB directory for the result cache (in-memory when omitted)",
    )
    parser.add_argument(
        "--rpc-port",
        type=int,
        default=8545,
        help="JSON-RPC listen port (default: 8545)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log every known-range inconsistency",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


def build_query(args: argparse.Namespace, chain_id: int) -> EventQuery:
    event_filter = EventFilter(
        address=tuple(args.address) or None,
        event=args.event,
        args=tuple(parse_topic_arg(t) for t in args.topic),
    )
    return EventQuery(
        chain_id=chain_id,
        filter=event_filter,
        from_block=parse_block_arg(args.from_block, "earliest"),
        to_block=parse_block_arg(args.to_block, "latest"),
        return_in_order=args.in_order,
    )


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    network = load_network_config(config_path)
    if not network.endpoints:
        logger.error("No endpoints configured in %s", args.config)
        sys.exit(1)

    try:
        query = build_query(args, network.chain_id)
    except ValueError as e:
        logger.error("Invalid query: %s", e)
        sys.exit(1)

    node = EventsNode(
        network=network,
        query=query,
        data_dir=Path(args.data_dir) if args.data_dir else None,
        rpc_port=args.rpc_port,
        engine_config=EngineConfig(debug=args.debug),
    )

    try:
        asyncio.run(node.run_until_stopped())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
