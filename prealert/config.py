# prealert/config.py
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
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pg_pool_min: int = 2
    pg_pool_max: int = 10

    # S3/R2 bucket for synthesized audio
    s3_endpoint_url: str | None = None  # e.g., https://<account>.r2.cloudflarestorage.com
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket_name: str | None = None
    s3_region: str = "auto"
    s3_force_path_style: bool = True

    # OpenAI (narration + text-to-speech)
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"  # point at an AI gateway if one is used
    openai_timeout_seconds: int = 60
    narration_model: str = "gpt-4.1-nano"
    # "structured" - narrate the parsed {nature, address, city}
    # "raw"        - narrate the raw dispatch text
    narration_mode: Literal["structured", "raw"] = "structured"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "nova"

    # Inbound email trigger
    email_subject_token: str = "pre-alert"
    email_webhook_secret: str | None = None  # X-Webhook-Secret shared with the email forwarder
    # Admin endpoints (Authorization: Bearer <token>)
    admin_token: str | None = None

    # Workflow engine
    workflow_worker_enabled: bool = True
    workflow_poll_interval: float = 1.0      # Seconds between polls when idle
    workflow_batch_size: int = 5             # Instances claimed per poll cycle
    workflow_max_attempts: int = 5           # Per-step attempt ceiling
    workflow_base_retry_delay: float = 5.0   # Doubles on each failed attempt
    workflow_max_retry_delay: float = 300.0
    workflow_stale_timeout: int = 300        # Release claims held longer than this (seconds)

    # Read API
    alerts_latest_limit: int = 5

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def s3_enabled(self) -> bool:
        """Check if S3 storage is configured"""
        return bool(
            self.s3_endpoint_url
            and self.s3_access_key
            and self.s3_secret_key
            and self.s3_bucket_name
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("database_url", self.database_url),
            ("openai_api_key", self.openai_api_key),
            ("s3_endpoint_url", self.s3_endpoint_url),
            ("s3_access_key", self.s3_access_key),
            ("s3_secret_key", self.s3_secret_key),
            ("s3_bucket_name", self.s3_bucket_name),
        ]
        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.email_webhook_secret:
        warnings.append("email_webhook_secret is not set (anyone can trigger pre-alert workflows).")

    if s.is_production and not s.admin_token:
        warnings.append("prod: admin_token is missing (admin endpoints will answer 503).")

    if not s.openai_api_key:
        warnings.append("openai_api_key is not set (narration and audio steps will be rejected and instances will fail).")

    if not s.s3_enabled:
        warnings.append("S3 storage is not configured (the HTTP app will refuse to start).")

    if s.workflow_base_retry_delay > s.workflow_max_retry_delay:
        warnings.append("workflow_base_retry_delay exceeds workflow_max_retry_delay (every retry uses the cap).")

    if s.workflow_max_attempts < 1:
        warnings.append("workflow_max_attempts < 1: every step failure will be terminal.")

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
