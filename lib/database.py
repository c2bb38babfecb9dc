from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

from postgrest.exceptions import APIError
from supabase import create_client, Client

from lib.config import Settings
from lib.error_handler import AppError, ConflictError, UpstreamError

logger = logging.getLogger(__name__)

# PostgREST code for "unique constraint violated"
UNIQUE_VIOLATION = '23505'

def create_supabase_client(settings: Settings) -> Client:
    """Service-role client; the application layer is the only authorization point."""
    if not settings.supabase_configured:
        raise AppError("Supabase configuration missing (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)

def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()

def utc_offset(seconds: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()

def first_row(response) -> Optional[Dict[str, Any]]:
    data = getattr(response, 'data', None)
    if isinstance(data, list):
        return data[0] if data else None
    return data or None

def rows(response) -> List[Dict[str, Any]]:
    data = getattr(response, 'data', None)
    if data is None:
        return []
    return data if isinstance(data, list) else [data]

def db_error(action: str, error: Exception) -> UpstreamError:
    """Wrap a driver error; the driver text only reaches clients when details are exposed."""
    message = error.message if isinstance(error, APIError) else str(error)
    return UpstreamError(f"{action}: {message}", user_message=f"Failed to {action.lower()}")

def is_unique_violation(error: Exception) -> bool:
    return isinstance(error, APIError) and error.code == UNIQUE_VIOLATION

def increment_counter(
    supabase: Client,
    table: str,
    row_id: str,
    column: str,
    delta: int = 1,
    max_attempts: int = 5,
) -> int:
    """Add ``delta`` to a denormalised counter with a compare-and-swap update.

    Each attempt only succeeds if the column still holds the value that was read,
    so concurrent increments are retried instead of overwriting each other.
    """
    for _ in range(max_attempts):
        current = first_row(
            supabase.table(table).select(f"id, {column}").eq('id', row_id).limit(1).execute()
        )
        if current is None:
            raise AppError(f"{table} row {row_id} not found", status_code=404)

        old_value = current.get(column) or 0
        new_value = max(0, old_value + delta)
        query = supabase.table(table).update({column: new_value}).eq('id', row_id)
        if current.get(column) is None:
            query = query.is_(column, 'null')
        else:
            query = query.eq(column, old_value)
        if rows(query.execute()):
            return new_value
        logger.info(f"Counter {table}.{column} for {row_id} changed concurrently, retrying")

    raise ConflictError(f"Could not update {table}.{column} for {row_id} after {max_attempts} attempts")
