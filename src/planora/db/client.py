"""
Planora - Supabase Client.

Low-level client construction. Store adapters and the session provider
receive clients from here instead of calling create_client themselves.
"""

from supabase import Client, create_client

from planora.config import settings

# Singleton service-role client (bypasses RLS, has auth.admin access)
_service_client: Client | None = None


def get_service_client() -> Client:
    """
    Get the service-role Supabase client.

    Uses singleton pattern to reuse connection. Used by the preference
    store and the identity store; never handed to request code directly.
    """
    global _service_client

    if _service_client is None:
        _service_client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )

    return _service_client


def create_session_client() -> Client:
    """
    Create a fresh anon-key client for one user's session.

    Not cached: refresh_session() stores the new session on the client,
    so sharing one instance across users would leak auth state.
    """
    return create_client(
        settings.supabase_url,
        settings.supabase_anon_key,
    )
