"""
Planora - Database access.

Supabase client factories. All Supabase clients are created here.
"""

from planora.db.client import get_service_client, create_session_client

__all__ = [
    "get_service_client",
    "create_session_client",
]
