# callrelay/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web"] = "all"  # "web": HTTP only, the queue is drained elsewhere
    log_level: str = "INFO"
    enable_request_logging: bool = True

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 10
    pg_connect_timeout: int = 5

    # Telegram (operator channel)
    # Without a token the notification service stays inert.
    telegram_bot_token: str | None = None
    telegram_send_timeout: float = 15.0   # sendMessage
    telegram_probe_timeout: float = 8.0   # getMe health probe

    # Notification poller
    notification_poll_interval: float = 3.0     # seconds between polls
    notification_batch_size: int = 50           # records pulled per poll
    notification_item_delay: float = 0.15       # pause between records (channel rate limit)

    # In-memory call tracking
    call_sweep_interval: float = 1800.0         # periodic sweep, 30 min
    call_ttl_seconds: float = 3600.0            # evict calls idle for 1 hour
    terminal_eviction_delay: float = 300.0      # one-shot eviction after terminal status

    # Long messages (Telegram hard limit is 4096)
    message_chunk_threshold: int = 4000
    message_chunk_size: int = 3900
    message_chunk_delay: float = 1.5

    # Transcript rendering
    transcript_max_messages: int = 12

    # DTMF digits (Fernet key used by the voice pipeline to encrypt captured digits)
    dtmf_encryption_key: str | None = None

    # Security
    admin_token: str | None = None
    metrics_token: str | None = None
    # Comma-separated CIDR ranges allowed to read /metrics without a token
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    # Only trust X-Forwarded-For / X-Real-IP behind a trusted reverse proxy
    trust_proxy_headers: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def telegram_enabled(self) -> bool:
        """Check if the operator channel is configured"""
        return bool(self.telegram_bot_token)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("database_url", self.database_url),
            ("admin_token", self.admin_token),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.telegram_bot_token:
        warnings.append("telegram_bot_token is not set: call notifications are disabled.")

    if s.notification_batch_size <= 0:
        warnings.append("notification_batch_size <= 0: the poller will never fetch anything.")

    if s.message_chunk_size > s.message_chunk_threshold:
        warnings.append(
            "message_chunk_size is larger than message_chunk_threshold: "
            "chunks may exceed the size that triggered chunking."
        )

    if s.terminal_eviction_delay > s.call_ttl_seconds:
        warnings.append(
            "terminal_eviction_delay exceeds call_ttl_seconds: the periodic sweep "
            "will usually evict terminal calls first."
        )

    if not s.metrics_token and not s.internal_networks.strip():
        warnings.append("metrics_token and internal_networks are both empty: /metrics is unreachable.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
