"""Supabase client wrapper and the persistence gateway used by all services."""

import os
from datetime import datetime, timezone
from typing import List, Optional
from supabase import create_client, Client
from supabase.client import ClientOptions
from ulid import ULID
from src.utils.errors import SupabaseError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

# Global client instance (singleton pattern)
_client: Optional[Client] = None


def generate_id() -> str:
    """Generate a text-based record ID (ULID)."""
    return str(ULID())


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton."""
    global _client

    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

        if not url or not key:
            raise SupabaseError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

        options = ClientOptions(
            auto_refresh_token=False,
            persist_session=False,
        )

        _client = create_client(url, key, options)
        logger.info("Supabase client initialized", url=url)

    return _client


async def close_supabase_client() -> None:
    """Drop the cached Supabase client."""
    global _client
    if _client:
        _client = None
        logger.info("Supabase client closed")


class SupabaseClient:
    """Async context manager for Supabase client."""

    def __init__(self, client: Optional[Client] = None):
        self.client: Optional[Client] = client

    async def __aenter__(self) -> Client:
        if self.client is None:
            self.client = get_supabase_client()
        return self.client

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.error(
                "Supabase operation error",
                error=str(exc_val),
                error_type=exc_type.__name__,
            )
        return False


def _apply_filters(query, filters: Optional[dict]):
    """Translate a filter dict into PostgREST predicates.

    List or tuple values become ``in`` filters, ``None`` becomes ``is null``,
    anything else is an equality match.
    """
    for column, value in (filters or {}).items():
        if isinstance(value, (list, tuple)):
            query = query.in_(column, list(value))
        elif value is None:
            query = query.is_(column, "null")
        else:
            query = query.eq(column, value)
    return query


class SupabaseGateway:
    """Single-row CRUD over named tables.

    ``update`` and ``delete`` return the affected rows, so a filter that
    includes the expected current value of a column works as a
    compare-and-set: an empty result means another writer got there first.
    Every storage failure is raised as ``SupabaseError``.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        """Fetch one row by primary key."""
        return await self.find_one(table, {"id": record_id})

    async def find_one(self, table: str, filters: dict) -> Optional[dict]:
        """Fetch the first row matching all filters."""
        rows = await self.list(table, filters, limit=1)
        return rows[0] if rows else None

    async def list(
        self,
        table: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Fetch all rows matching the filters."""
        async with SupabaseClient(self._client) as client:
            try:
                query = _apply_filters(client.table(table).select("*"), filters)
                if order_by:
                    query = query.order(order_by, desc=descending)
                if limit:
                    query = query.limit(limit)
                result = query.execute()
                return result.data if result.data else []
            except Exception as e:
                raise SupabaseError(f"Failed to read {table}: {e}") from e

    async def insert(self, table: str, values: dict) -> dict:
        """Insert one row and return it as stored."""
        async with SupabaseClient(self._client) as client:
            try:
                result = client.table(table).insert(values).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to insert into {table}: {e}") from e
            if result.data and len(result.data) > 0:
                return result.data[0]
            raise SupabaseError(f"Failed to insert into {table}: no data returned")

    async def update(self, table: str, filters: dict, values: dict) -> List[dict]:
        """Update rows matching the filters; returns the updated rows."""
        if not filters:
            raise SupabaseError(f"Refusing unfiltered update on {table}")
        async with SupabaseClient(self._client) as client:
            try:
                query = _apply_filters(client.table(table).update(values), filters)
                result = query.execute()
                return result.data if result.data else []
            except Exception as e:
                raise SupabaseError(f"Failed to update {table}: {e}") from e

    async def delete(self, table: str, filters: dict) -> List[dict]:
        """Delete rows matching the filters; returns the deleted rows."""
        if not filters:
            raise SupabaseError(f"Refusing unfiltered delete on {table}")
        async with SupabaseClient(self._client) as client:
            try:
                query = _apply_filters(client.table(table).delete(), filters)
                result = query.execute()
                return result.data if result.data else []
            except Exception as e:
                raise SupabaseError(f"Failed to delete from {table}: {e}") from e
