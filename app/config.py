"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Payment Webhook (shared secret sent as Bearer token by the payment provider)
    webhook_secret: Optional[str] = None

    # Generation Request API
    api_key: Optional[str] = None

    # Remote Generation Site Credentials
    sora_email: Optional[str] = None
    sora_password: Optional[str] = None

    # Remote Rendering Agent (browser automation sidecar)
    render_agent_url: str = "http://localhost:3001"
    render_agent_token: Optional[str] = None
    render_agent_request_timeout: float = 120.0

    # Generation Queue & Protocol
    # USER DECISION: one active job, each job owns a full browser session
    generation_max_concurrent: int = 1
    generation_poll_interval_seconds: float = 10.0
    generation_timeout_seconds: float = 2400.0  # 40 minutes
    generation_purge_every_ticks: int = 5
    generation_average_seconds: float = 600.0  # Seed for wait estimates
    generation_auto_retry_limit: int = 0  # 0 = only explicit re-submission

    # Payment bounce policy: "always" | "unless_completed"
    bounce_policy: str = "always"

    # Notifications (Resend)
    resend_api_key: Optional[str] = None
    notification_from: str = "Sora AI Video <sora@2025.email>"
    notification_max_retries: int = 3
    notification_retry_delay_seconds: float = 5.0

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt

    # Stranded order recovery
    recovery_interval_minutes: int = 10

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
