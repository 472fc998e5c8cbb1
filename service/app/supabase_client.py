from functools import lru_cache

from supabase import create_client, Client
from app.config import get_settings


@lru_cache()
def get_supabase_admin() -> Client:
    """Service role client (bypasses RLS). Used by both Supabase repositories."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set "
            "when STORAGE_BACKEND=supabase"
        )
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key
    )
