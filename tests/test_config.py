"""Tests for Settings and the config models."""

from __future__ import annotations

from vex_client.shared.config import ClientConfig, Settings


class TestClientConfig:
    """Derived values on ClientConfig."""

    def test_webhook_url_joins_path(self):
        config = ClientConfig(url="http://vex", api_key="k", backend_url="https://app.example.com/")
        assert config.webhook_url() == "https://app.example.com/api/v1/vex/webhooks"

    def test_no_backend_url_means_no_webhook(self):
        assert ClientConfig(url="http://vex", api_key="k").webhook_url() is None

    def test_defaults(self):
        config = ClientConfig(url="http://vex", api_key="k")
        assert config.retry.max_retries == 5
        assert config.reconnection.max_delay_s == 30
        assert config.push.message_timeout_s == 300
        assert config.poll_interval_s == 5
        assert config.health_check_interval_s == 30


class TestSettings:
    """Environment-driven configuration."""

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("VEX_URL", "https://vex.example.com")
        monkeypatch.setenv("VEX_API_KEY", "from-env")
        monkeypatch.setenv("VEX_PUSH_ENABLED", "false")
        monkeypatch.setenv("VEX_RECONNECT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("VEX_OUTBOX_DIR", "/tmp/vex-outbox")

        settings = Settings()
        client = settings.client_config()
        outbox = settings.outbox_config()

        assert client.url == "https://vex.example.com"
        assert client.api_key == "from-env"
        assert client.push.enabled is False
        assert client.reconnection.max_attempts == 7
        assert outbox.persist_dir == "/tmp/vex-outbox"

    def test_empty_token_becomes_none(self, monkeypatch):
        monkeypatch.setenv("VEX_TOKEN", "")
        assert Settings().client_config().token is None
