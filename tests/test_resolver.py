"""Tests for block tag resolution."""

import pytest

from ethevents.common.types import BlockRange, InvalidRangeError
from ethevents.transport.endpoint import EndpointError
from ethevents.transport.resolver import BlockNumberResolver

from tests.fixtures.endpoints import FakeClock, FakeEndpoint


class BrokenEndpoint(FakeEndpoint):
    async def send(self, method, params):
        raise EndpointError(self.id, "down")


class TestResolveTag:
    @pytest.mark.asyncio
    async def test_integers_pass_through(self):
        resolver = BlockNumberResolver([])
        assert await resolver.resolve_tag(1234) == 1234

    @pytest.mark.asyncio
    async def test_earliest_is_zero(self):
        endpoint = FakeEndpoint()
        resolver = BlockNumberResolver([endpoint])
        assert await resolver.resolve_tag("earliest") == 0
        assert endpoint.calls == []

    @pytest.mark.asyncio
    async def test_latest_and_finalized(self):
        resolver = BlockNumberResolver([FakeEndpoint(head=500, finalized=400)])
        assert await resolver.resolve_tag("latest") == 500
        assert await resolver.resolve_tag("finalized") == 400
        assert await resolver.resolve_tag("safe") == 400

    @pytest.mark.asyncio
    async def test_unknown_tag(self):
        with pytest.raises(ValueError):
            await BlockNumberResolver([FakeEndpoint()]).resolve_tag("newest")

    @pytest.mark.asyncio
    async def test_cached_within_interval(self):
        clock = FakeClock()
        endpoint = FakeEndpoint(head=500)
        resolver = BlockNumberResolver([endpoint], refresh_interval=12_000.0, clock=clock)

        assert await resolver.resolve_tag("latest") == 500
        endpoint.head = 510
        clock.advance(5_000)
        assert await resolver.resolve_tag("latest") == 500
        assert len(endpoint.calls) == 1

        clock.advance(8_000)
        assert await resolver.resolve_tag("latest") == 510
        assert len(endpoint.calls) == 2

    @pytest.mark.asyncio
    async def test_never_moves_backwards(self):
        clock = FakeClock()
        endpoint = FakeEndpoint(head=500)
        resolver = BlockNumberResolver([endpoint], refresh_interval=1_000.0, clock=clock)

        await resolver.resolve_tag("latest")
        endpoint.head = 490
        clock.advance(2_000)
        assert await resolver.resolve_tag("latest") == 500

    @pytest.mark.asyncio
    async def test_falls_through_endpoints(self):
        broken = BrokenEndpoint("https://broken.example.org")
        working = FakeEndpoint("https://working.example.org", head=77)
        resolver = BlockNumberResolver([broken, working])
        assert await resolver.resolve_tag("latest") == 77

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self):
        resolver = BlockNumberResolver([BrokenEndpoint()])
        with pytest.raises(EndpointError):
            await resolver.resolve_tag("latest")


class TestResolveRange:
    @pytest.mark.asyncio
    async def test_resolve(self):
        resolver = BlockNumberResolver([FakeEndpoint(head=1_000, finalized=900)])
        required, finalized = await resolver.resolve("earliest", "latest")
        assert required == BlockRange(0, 1_000)
        assert finalized == 900

    @pytest.mark.asyncio
    async def test_inverted_range(self):
        resolver = BlockNumberResolver([FakeEndpoint(head=100)])
        with pytest.raises(InvalidRangeError):
            await resolver.resolve(500, "latest")
