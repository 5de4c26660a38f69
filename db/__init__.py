"""Database client and operations."""

from .supabase_client import SupabaseClient, UniqueViolationError, get_db_client

__all__ = ["SupabaseClient", "UniqueViolationError", "get_db_client"]
