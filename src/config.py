from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    app_debug: bool = False
    internal_scheduler_secret: str | None = None
    webhook_max_retries: int = 3
    webhook_bulk_retry_max_ids: int = 100
    webhook_bulk_retry_workers: int = 1
    webhook_cleanup_days: int = 30
    webhook_events_max_per_page: int = 100
    whatsapp_webhook_secret: str | None = None  # unset = signatures not enforced
    whatsapp_verify_token: str | None = None
    whatsapp_auto_reply_text: str | None = None
    waha_base_url: str | None = None
    waha_api_key: str | None = None
    whatsapp_cloud_api_base: str = "https://graph.facebook.com/v18.0"
    whatsapp_cloud_access_token: str | None = None
    provider_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
