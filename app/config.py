# app/config.py
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
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "002_rating_running_average.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "crisis_dispatch"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_command_timeout: int = 30

    # Security
    # Actor tokens are minted by the credential service; we only verify them.
    actor_token_secret: str | None = None
    actor_token_ttl_seconds: int = 43200  # 12 hours
    metrics_token: str | None = None
    allowed_origins: list[str] = ["*"]
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    trust_proxy_headers: bool = True  # Honour X-Forwarded-For (only behind a trusted proxy)
    rate_limit_per_minute: int = 60

    # Dispatch
    dispatch_fanout_concurrency: int = 10        # Max volunteers processed in parallel per help request
    dispatch_mark_crisis_notified: bool = False  # Opt in: advance new/verified crises to notifications_sent after fan-out

    # Notification channel (real-time push to user rooms)
    # "log"     - write events to the application log (dev)
    # "webhook" - POST events to a push gateway that owns the socket connections
    notification_channel: Literal["log", "webhook"] = "log"
    notification_webhook_url: str | None = None      # e.g. http://push-gateway:4000/emit
    notification_webhook_token: str | None = None    # Bearer token expected by the gateway
    notification_emit_timeout_seconds: float = 5.0

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def webhook_channel_enabled(self) -> bool:
        return self.notification_channel == "webhook" and bool(self.notification_webhook_url)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("actor_token_secret", self.actor_token_secret),
            ("metrics_token", self.metrics_token),
        ]

        if self.notification_channel == "webhook":
            required_fields.append(("notification_webhook_url", self.notification_webhook_url))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.actor_token_secret:
        warnings.append("actor_token_secret is missing (every authenticated route will reject requests).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.enable_metrics and not s.metrics_token:
        warnings.append("enable_metrics=True but metrics_token is not set: /metrics is only reachable from internal networks.")

    if s.notification_channel == "log":
        warnings.append("notification_channel=log: volunteers will not receive real-time notifications.")
    elif not s.notification_webhook_url:
        warnings.append("notification_channel=webhook but notification_webhook_url is missing.")

    if s.dispatch_fanout_concurrency < 1:
        warnings.append("dispatch_fanout_concurrency < 1 is treated as 1.")

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
