"""Service-role Supabase client for the remote storage backend."""

from typing import Dict, Tuple

from supabase import Client, create_client

from app.config import Settings, settings as default_config

_clients: Dict[Tuple[str, str], Client] = {}


def get_supabase(config: Settings = default_config) -> Client:
    """Get or create the client for ``config``'s project URL and key."""
    if not config.supabase_url or not config.supabase_service_role_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set "
            "when STORAGE_BACKEND=supabase"
        )
    key = (config.supabase_url, config.supabase_service_role_key)
    if key not in _clients:
        _clients[key] = create_client(*key)
    return _clients[key]
