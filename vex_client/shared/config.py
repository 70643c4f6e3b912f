"""
MODULE OVERVIEW:
This module provides client configuration using Pydantic Settings.
Where it fits: every timing the resilience core depends on is declared here once.

WHAT IS HAPPENING HERE:
`ClientConfig` and `OutboxConfig` are plain Pydantic models that callers build in
code. `Settings` reads the same knobs from the environment (`VEX_` prefix, `.env`)
and turns them into those models, which is what the CLI does. All durations are
seconds.
"""
from typing import Any
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

# Path where the application must expose the webhook receiver.
VEX_WEBHOOK_PATH = "/api/v1/vex/webhooks"


class RetryConfig(BaseModel):
    max_retries: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 16.0
    request_timeout_s: float = 30.0


class ReconnectionConfig(BaseModel):
    enabled: bool = True
    initial_delay_s: float = 1.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0
    max_attempts: float = float("inf")


class PushConfig(BaseModel):
    enabled: bool = True
    connection_timeout_s: float = 60.0
    subscribe_timeout_s: float = 10.0
    message_timeout_s: float = 300.0
    auto_reconnect: bool = True
    max_reconnect_attempts: float = float("inf")
    reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = 30.0


class ClientConfig(BaseModel):
    url: str
    api_key: str
    # Existing session UUID; empty creates a new session.
    token: str | None = None
    # Base URL of *your* app. When set, the backend pushes events to
    # `<backend_url>/api/v1/vex/webhooks` and the client holds no transport.
    backend_url: str | None = None
    metadata: dict[str, Any] | None = None

    retry: RetryConfig = Field(default_factory=RetryConfig)
    reconnection: ReconnectionConfig = Field(default_factory=ReconnectionConfig)
    push: PushConfig = Field(default_factory=PushConfig)

    # 0 disables either loop.
    health_check_interval_s: float = 30.0
    poll_interval_s: float = 5.0

    def webhook_url(self) -> str | None:
        if not self.backend_url:
            return None
        return f"{self.backend_url.rstrip('/')}{VEX_WEBHOOK_PATH}"


class OutboxConfig(BaseModel):
    persist_dir: str = ".vex-queue"
    max_attempts: int = 100
    base_delay_s: float = 5.0
    max_delay_s: float = 60.0
    persist_interval_s: float = 5.0
    max_age_s: float = 48 * 60 * 60
    max_queue_size: int = 10000


class Settings(BaseSettings):
    URL: str = "http://127.0.0.1:5342"
    API_KEY: str = ""
    TOKEN: str | None = None
    BACKEND_URL: str | None = None
    LOG_LEVEL: str = "INFO"

    # Webhook receiver
    WEBHOOK_HOST: str = "0.0.0.0"
    WEBHOOK_PORT: int = 8000

    # HTTP
    MAX_RETRIES: int = 5
    RETRY_BASE_DELAY_S: float = 1.0
    REQUEST_TIMEOUT_S: float = 30.0

    # Reconnection
    RECONNECT_ENABLED: bool = True
    RECONNECT_INITIAL_DELAY_S: float = 1.0
    RECONNECT_MAX_DELAY_S: float = 30.0
    RECONNECT_MULTIPLIER: float = 2.0
    RECONNECT_MAX_ATTEMPTS: float = float("inf")

    # Polling / health
    POLL_INTERVAL_S: float = 5.0
    HEALTH_CHECK_INTERVAL_S: float = 30.0

    # Push socket
    PUSH_ENABLED: bool = True
    PUSH_CONNECTION_TIMEOUT_S: float = 60.0
    PUSH_SUBSCRIBE_TIMEOUT_S: float = 10.0
    PUSH_MESSAGE_TIMEOUT_S: float = 300.0

    # Outbox
    OUTBOX_DIR: str = ".vex-queue"
    OUTBOX_MAX_ATTEMPTS: int = 100
    OUTBOX_MAX_AGE_S: float = 48 * 60 * 60
    OUTBOX_MAX_QUEUE_SIZE: int = 10000

    class Config:
        env_file = ".env"
        env_prefix = "VEX_"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    def client_config(self) -> ClientConfig:
        return ClientConfig(
            url=self.URL,
            api_key=self.API_KEY,
            token=self.TOKEN or None,
            backend_url=self.BACKEND_URL or None,
            retry=RetryConfig(
                max_retries=self.MAX_RETRIES,
                base_delay_s=self.RETRY_BASE_DELAY_S,
                request_timeout_s=self.REQUEST_TIMEOUT_S,
            ),
            reconnection=ReconnectionConfig(
                enabled=self.RECONNECT_ENABLED,
                initial_delay_s=self.RECONNECT_INITIAL_DELAY_S,
                max_delay_s=self.RECONNECT_MAX_DELAY_S,
                multiplier=self.RECONNECT_MULTIPLIER,
                max_attempts=self.RECONNECT_MAX_ATTEMPTS,
            ),
            push=PushConfig(
                enabled=self.PUSH_ENABLED,
                connection_timeout_s=self.PUSH_CONNECTION_TIMEOUT_S,
                subscribe_timeout_s=self.PUSH_SUBSCRIBE_TIMEOUT_S,
                message_timeout_s=self.PUSH_MESSAGE_TIMEOUT_S,
            ),
            poll_interval_s=self.POLL_INTERVAL_S,
            health_check_interval_s=self.HEALTH_CHECK_INTERVAL_S,
        )

    def outbox_config(self) -> OutboxConfig:
        return OutboxConfig(
            persist_dir=self.OUTBOX_DIR,
            max_attempts=self.OUTBOX_MAX_ATTEMPTS,
            max_age_s=self.OUTBOX_MAX_AGE_S,
            max_queue_size=self.OUTBOX_MAX_QUEUE_SIZE,
        )


settings = Settings()
