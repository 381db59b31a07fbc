"""
Settings are read from BALANCECHAIN_* environment variables.
"""

from balancechain.config import BalanceChainSettings, RuntimeSettings, SignalingSettings, SyncSettings
from balancechain.utils import get_logger


class TestSettings:
    def test_defaults(self):
        s = BalanceChainSettings()
        assert s.sync.pull_limit == 200
        assert s.chain.nonce_bytes == 16
        assert s.signaling.backoff_initial_ms == 250
        assert s.signaling.backoff_max_ms == 8000

    def test_csv_urls_from_env(self, monkeypatch):
        monkeypatch.setenv("BALANCECHAIN_SIGNAL_URLS", "ws://a:1, ws://b:2 ,,")
        assert SignalingSettings().urls == ["ws://a:1", "ws://b:2"]

    def test_advertise_hosts_from_env(self, monkeypatch):
        monkeypatch.setenv("BALANCECHAIN_SYNC_ADVERTISE_HOSTS", "192.168.1.5,10.0.0.2")
        monkeypatch.setenv("BALANCECHAIN_SYNC_PULL_LIMIT", "50")
        s = SyncSettings()
        assert s.advertise_hosts == ["192.168.1.5", "10.0.0.2"]
        assert s.pull_limit == 50

    def test_log_level_normalized(self, monkeypatch):
        monkeypatch.setenv("BALANCECHAIN_LOG_LEVEL", "debug")
        assert RuntimeSettings().log_level == "DEBUG"
        monkeypatch.setenv("BALANCECHAIN_LOG_LEVEL", "chatty")
        assert RuntimeSettings().log_level == "INFO"


class TestLogging:
    def test_logger_names_are_namespaced(self):
        assert get_logger("relay").name == "balancechain.relay"
        assert get_logger("balancechain.node").name == "balancechain.node"
