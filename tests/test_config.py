"""
Unit tests for environment configuration.
"""

import pytest

from conftest import TARGET
from slipstream.config import derive_ws_url, load_config

REQUIRED = {
    "RPC_URL": "https://rpc.example.com/?api-key=abc",
    "WALLET_PRIVATE_KEY_BASE58": "not-checked-here",
    "TARGET_WALLET": TARGET,
}


@pytest.fixture
def env(monkeypatch, tmp_path):
    # Keep a developer's .env out of the test
    monkeypatch.chdir(tmp_path)
    for name, value in REQUIRED.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


class TestLoadConfig:

    def test_defaults(self, env):
        config = load_config()

        assert config.ws_url == "wss://rpc.example.com/?api-key=abc"
        assert config.base_slippage_bps == 300
        assert config.slippage_increment_bps == 200
        assert config.max_slippage_bps == 1500
        assert config.emergency_slippage_bps == 3000
        assert config.max_retries == 3
        assert config.push_enabled and config.poll_enabled
        assert config.push_debounce_seconds == 0.5
        assert config.balance_cache_ttl_seconds == 3.0

    def test_overrides(self, env):
        env.setenv("DETECTOR_MODE", "poll")
        env.setenv("ENABLE_BUY", "false")
        env.setenv("WS_URL", "wss://other.example.com")
        env.setenv("MAX_RETRIES", "5")

        config = load_config()

        assert not config.push_enabled
        assert config.poll_enabled
        assert not config.enable_buy
        assert config.enable_sell
        assert config.ws_url == "wss://other.example.com"
        assert config.max_retries == 5

    @pytest.mark.parametrize("missing", sorted(REQUIRED))
    def test_required(self, env, missing):
        env.delenv(missing)

        with pytest.raises(ValueError, match=missing):
            load_config()

    def test_bad_detector_mode(self, env):
        env.setenv("DETECTOR_MODE", "sometimes")

        with pytest.raises(ValueError):
            load_config()


class TestDeriveWsUrl:

    def test_https(self):
        assert derive_ws_url("https://api.mainnet-beta.solana.com") == "wss://api.mainnet-beta.solana.com"

    def test_http(self):
        assert derive_ws_url("http://localhost:8899") == "ws://localhost:8899"
