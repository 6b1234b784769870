"""Tests for engine tuning and endpoint configuration loading."""

import json

import pytest

from ethevents.common.config import (
    DEFAULT_BLOCK_BINS,
    EngineConfig,
    NetworkConfig,
    load_network_config,
    parse_block_arg,
)
from ethevents.common.types import UNCONSTRAINED


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.block_bins == (1, 1_000, 2_000, 5_000, 10_000, UNCONSTRAINED)
        assert config.block_bins == DEFAULT_BLOCK_BINS
        assert config.ordinary_retries == 4
        assert config.exploratory_retries == 1
        assert config.lookback_window == 30_000.0
        assert config.ema_alpha == 0.8
        assert config.ucb_coefficient == 0.75
        assert config.stabilization_time == 1_000.0
        assert config.requests_per_batch == 33
        assert config.max_requests_to_track == 512

    def test_bins_must_ascend(self):
        with pytest.raises(ValueError):
            EngineConfig(block_bins=(1_000, 10))

    def test_unconstrained_only_last(self):
        with pytest.raises(ValueError):
            EngineConfig(block_bins=(UNCONSTRAINED, 10))

    def test_empty_bins(self):
        with pytest.raises(ValueError):
            EngineConfig(block_bins=())

    def test_alpha_bounds(self):
        with pytest.raises(ValueError):
            EngineConfig(ema_alpha=1.5)


class TestNetworkConfig:
    def test_from_json(self):
        config = NetworkConfig.from_json({
            "chainId": 10,
            "endpoints": [
                {"url": "https://opt.example.org"},
                {"url": "https://x.example.org", "key": "no-events", "httpTimeout": 5},
                "https://bare.example.org",
            ],
        })
        assert config.chain_id == 10
        assert [e.url for e in config.endpoints] == [
            "https://opt.example.org", "https://x.example.org", "https://bare.example.org",
        ]
        assert config.endpoints[0].key == "http"
        assert config.endpoints[1].key == "no-events"
        assert config.endpoints[1].http_timeout == 5.0

    def test_hex_chain_id(self):
        assert NetworkConfig.from_json({"chainId": "0x2105"}).chain_id == 8453

    def test_missing_url(self):
        with pytest.raises(ValueError):
            NetworkConfig.from_json({"endpoints": [{"key": "http"}]})

    def test_load_file(self, tmp_path):
        path = tmp_path / "network.json"
        path.write_text(json.dumps({"chainId": 1, "endpoints": ["https://rpc.example.org"]}))
        config = load_network_config(path)
        assert config.chain_id == 1
        assert len(config.endpoints) == 1


class TestParseBlockArg:
    def test_default(self):
        assert parse_block_arg(None, "latest") == "latest"

    def test_decimal(self):
        assert parse_block_arg("1234", "latest") == 1234

    def test_hex(self):
        assert parse_block_arg("0x10", "latest") == 16

    def test_tag(self):
        assert parse_block_arg("finalized", "latest") == "finalized"
