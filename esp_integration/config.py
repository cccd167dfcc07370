from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    internal_api_key: str | None = None
    log_level: str = "INFO"

    esp_token_secret: str | None = None
    esp_token_secret_previous: str | None = None
    esp_oauth_state_secret: str | None = None
    default_esp_provider: str | None = None

    ghl_client_id: str | None = None
    ghl_client_secret: str | None = None
    ghl_redirect_uri: str | None = None
    ghl_webhook_public_key: str | None = None
    ghl_webhook_signature_mode: str = "enforce"  # enforce | permissive_dev
    ghl_oauth_mode: str = "legacy"  # legacy | hybrid | agency
    ghl_agency_token: str | None = None
    ghl_agency_company_id: str | None = None
    klaviyo_webhook_secret: str | None = None

    esp_http_timeout_seconds: float = 12.0
    esp_fanout_concurrency: int = 5
    esp_backfill_concurrency: int = 3
    esp_backfill_timeout_seconds: float = 15.0
    esp_campaign_cache_ttl_seconds: int = 300
    esp_webhook_dedup_ttl_seconds: int = 86400
    oauth_refresh_buffer_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    def token_secrets(self) -> list[str]:
        """Vault secrets, newest first. Blank and repeated values are dropped."""
        return _unique_non_empty([self.esp_token_secret, self.esp_token_secret_previous])

    def oauth_state_secrets(self) -> list[str]:
        return _unique_non_empty(
            [self.esp_oauth_state_secret, self.esp_token_secret, self.esp_token_secret_previous]
        )


def _unique_non_empty(values: list[str | None]) -> list[str]:
    seen: list[str] = []
    for value in values:
        text = (value or "").strip()
        if text and text not in seen:
            seen.append(text)
    return seen


settings = Settings()
