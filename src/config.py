from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    resend_webhook_secret: str | None = None
    resend_webhook_signature_header: str = "resend-signature"
    resend_webhook_require_signature: bool = False
    internal_scheduler_secret: str | None = None
    dedupe_window_seconds: float = 10.0
    dedupe_candidate_limit: int = 100
    resolver_retry_delay_ms: int = 500
    resolver_campaign_scan_limit: int = 10
    relink_backoff_ms: str = "500,1000,2000"  # comma separated, one entry per attempt
    relink_max_total_ms: int = 4000
    reconcile_max_attempts: int = 2
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
