"""
Endpoints — independent JSON-RPC paths able to answer eth_getLogs.

Each endpoint wraps a raw ``send`` with a per-request timeout that bounds the
whole request including retries, and exponential backoff between retries.
HttpEndpoint speaks JSON-RPC 2.0 over HTTP via httpx.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence, Union

import httpx

from ethevents.common.config import NetworkConfig
from ethevents.common.types import EventLog

logger = logging.getLogger(__name__)


_request_ids = itertools.count(1)

RPC_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class EndpointError(Exception):
    """A single endpoint failed to answer a single request."""

    def __init__(self, endpoint_id: str, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(f"{endpoint_id}: {message}")
        self.endpoint_id = endpoint_id
        self.message = message
        self.code = code
        self.data = data


def endpoint_id_for(key: str, url: str) -> str:
    return f"{key}-{url}"


# ---------------------------------------------------------------------------
# Endpoint base
# ---------------------------------------------------------------------------

class Endpoint(ABC):
    """One network path to a chain. Timeouts and retry delays are in milliseconds."""

    def __init__(self, id: str, chain_id: int) -> None:
        self.id = id
        self.chain_id = chain_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r}, chain_id={self.chain_id})"

    @abstractmethod
    async def send(self, method: str, params: list) -> Any:
        """Send one JSON-RPC request and return its ``result``."""
        ...

    async def request(
        self,
        method: str,
        params: list,
        *,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_delay: float = 0.0,
    ) -> Any:
        coro = self._send_with_retries(method, params, retry_count, retry_delay)
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout / 1000)

    async def _send_with_retries(
        self, method: str, params: list, retry_count: int, retry_delay: float
    ) -> Any:
        attempt = 0
        while True:
            try:
                return await self.send(method, params)
            except (EndpointError, httpx.HTTPError) as e:
                if attempt >= retry_count:
                    raise
                delay = retry_delay * (1 << attempt)
                logger.debug(
                    "%s failed on %s (attempt %d/%d): %s; retrying in %.0fms",
                    method, self.id, attempt + 1, retry_count + 1, e, delay,
                )
                attempt += 1
                await asyncio.sleep(delay / 1000)

    async def get_logs(
        self,
        *,
        address: Union[None, str, list[str]],
        topics: list,
        from_block: int,
        to_block: int,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_delay: float = 0.0,
    ) -> list[EventLog]:
        filter_obj: dict[str, Any] = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": topics,
        }
        if address is not None:
            filter_obj["address"] = address
        result = await self.request(
            "eth_getLogs",
            [filter_obj],
            timeout=timeout,
            retry_count=retry_count,
            retry_delay=retry_delay,
        )
        if not isinstance(result, list):
            raise EndpointError(self.id, f"malformed eth_getLogs result: {type(result).__name__}")
        try:
            return [EventLog.from_rpc(item) for item in result]
        except (KeyError, TypeError, ValueError) as e:
            raise EndpointError(self.id, f"malformed log in eth_getLogs result: {e}") from e

    async def ping(self, timeout: Optional[float] = None) -> float:
        """Round-trip time of a trivial request, in milliseconds."""
        start = time.perf_counter()
        await self.request("eth_chainId", [], timeout=timeout)
        return (time.perf_counter() - start) * 1000

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# HTTP endpoint
# ---------------------------------------------------------------------------

class HttpEndpoint(Endpoint):
    """JSON-RPC 2.0 over HTTP."""

    def __init__(
        self,
        url: str,
        chain_id: int,
        *,
        key: str = "http",
        http_timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(endpoint_id_for(key, url), chain_id)
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(http_timeout),
            headers=RPC_HEADERS,
        )

    async def send(self, method: str, params: list) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": params,
        }
        resp = await self._client.post(self.url, json=payload)
        if resp.status_code == 429:
            raise EndpointError(self.id, "HTTP 429 rate limited", code=429)
        if resp.status_code >= 400:
            raise EndpointError(self.id, f"HTTP {resp.status_code}", code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise EndpointError(self.id, "response is not JSON") from e
        if not isinstance(data, dict):
            raise EndpointError(self.id, "response is not a JSON-RPC object")

        error = data.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise EndpointError(
                    self.id,
                    str(error.get("message", "unknown error")),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise EndpointError(self.id, str(error))
        if "result" not in data:
            raise EndpointError(self.id, "response has neither result nor error")
        return data["result"]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Endpoint sets
# ---------------------------------------------------------------------------

def unique_endpoints(endpoints: Iterable[Endpoint]) -> list[Endpoint]:
    """Drop endpoints whose id was already seen, warning about each duplicate."""
    seen: set[str] = set()
    result = []
    for endpoint in endpoints:
        if endpoint.id in seen:
            logger.warning("Endpoint ID %s was included more than once.", endpoint.id)
            continue
        seen.add(endpoint.id)
        result.append(endpoint)
    return result


def endpoints_from_config(
    network: NetworkConfig, client: Optional[httpx.AsyncClient] = None
) -> list[Endpoint]:
    return unique_endpoints(
        HttpEndpoint(
            cfg.url,
            network.chain_id,
            key=cfg.key,
            http_timeout=cfg.http_timeout,
            client=client,
        )
        for cfg in network.endpoints
    )


async def measure_round_trip(
    endpoints: Sequence[Endpoint], timeout: Optional[float] = 5_000.0
) -> Optional[float]:
    """Fastest successful round trip across endpoints (ms), or None if all failed."""
    if not endpoints:
        return None
    results = await asyncio.gather(
        *(e.ping(timeout=timeout) for e in endpoints), return_exceptions=True
    )
    samples = []
    for endpoint, result in zip(endpoints, results):
        if isinstance(result, BaseException):
            logger.debug("Ping to %s failed: %s", endpoint.id, result)
            continue
        samples.append(result)
    if not samples:
        return None
    return min(samples)
