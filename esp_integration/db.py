from supabase import Client, create_client

from esp_integration.config import Settings


def create_supabase_client(app_settings: Settings) -> Client:
    """Service-role client. Raises when the connection settings are missing."""
    if not app_settings.supabase_url or not app_settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured")
    return create_client(app_settings.supabase_url, app_settings.supabase_service_role_key)
