from functools import lru_cache
from supabase import create_client, Client
from waba_connect.core.config import settings


@lru_cache
def get_supabase() -> Client:
    """Shared Supabase client, created on first use."""
    return create_client(settings.supabase_url, settings.supabase_key)
