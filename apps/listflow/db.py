import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client, create_client

from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.db")

_client: Optional[Client] = None


class SupabaseNotConfigured(RuntimeError):
    pass


def get_supabase() -> Optional[Client]:
    global _client
    if _client is not None:
        return _client
    if not (settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY):
        return None
    _client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


def require_supabase() -> Client:
    sb = get_supabase()
    if not sb:
        raise SupabaseNotConfigured("Supabase not configured (missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY).")
    return sb


# -------------------------
# Error classification
# -------------------------

def _message(err: Any) -> str:
    if err is None:
        return ""
    msg = getattr(err, "message", None)
    if not msg:
        msg = str(err)
    return str(msg).lower()


def _code(err: Any) -> str:
    return str(getattr(err, "code", "") or "")


def is_missing_column_error(err: Any, column: str) -> bool:
    msg = _message(err)
    return "column" in msg and column.lower() in msg


def is_missing_any_column_error(err: Any, columns: Iterable[str]) -> bool:
    return any(is_missing_column_error(err, c) for c in columns)


def is_missing_table_error(err: Any) -> bool:
    if _code(err) == "42P01":
        return True
    msg = _message(err)
    return "relation" in msg or "could not find the table" in msg or (
        "does not exist" in msg and "column" not in msg
    )


def is_unique_violation(err: Any) -> bool:
    return _code(err) == "23505" or "duplicate" in _message(err)


def is_recoverable_column_error(err: Any) -> bool:
    """
    Errors PostgREST returns when a select or payload names a column the
    live schema does not have. Callers retry with a narrower column set.
    """
    msg = _message(err)
    return (
        "column" in msg
        or "schema cache" in msg
        or "failed to parse" in msg
        or "does not exist" in msg
    )


def missing_column_in(err: Any, columns: Iterable[str]) -> Optional[str]:
    """Returns the first of `columns` the error complains about, if any."""
    for column in columns:
        if is_missing_column_error(err, column):
            return column
    return None


# -------------------------
# Query helpers
# -------------------------

def rows_of(res: Any) -> List[Dict[str, Any]]:
    if res is None:
        return []
    data = getattr(res, "data", None)
    if not data:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)


def first_row(res: Any) -> Optional[Dict[str, Any]]:
    rows = rows_of(res)
    return rows[0] if rows else None


def select_with_fallback(
    run: Callable[[str], Any],
    candidates: Sequence[str],
    recoverable: Callable[[APIError], bool] = is_recoverable_column_error,
) -> tuple[List[Dict[str, Any]], str]:
    """
    Runs `run(select)` for each column set until one succeeds.
    Returns (rows, select_used). Re-raises the last error when every
    candidate fails, or the first error that is not a schema mismatch.
    """
    last_error: Optional[APIError] = None
    for select in candidates:
        try:
            return rows_of(run(select)), select
        except APIError as e:
            if not recoverable(e):
                raise
            last_error = e
            log.debug("select fallback: %s failed (%s)", select, e.message)
    if last_error:
        raise last_error
    return [], ""


def write_dropping_missing_columns(
    run: Callable[[Dict[str, Any]], Any],
    payload: Dict[str, Any],
    max_attempts: int = 20,
) -> tuple[Any, Dict[str, Any]]:
    """
    Writes `payload`, removing whichever column PostgREST rejects and retrying.
    Returns (response, payload_written).
    """
    current = dict(payload)
    last_error: Optional[APIError] = None
    for _ in range(max_attempts):
        if not current:
            break
        try:
            return run(current), current
        except APIError as e:
            last_error = e
            column = missing_column_in(e, list(current.keys()))
            if not column:
                raise
            current.pop(column, None)
    if last_error:
        raise last_error
    return None, current


def insert_with_fallback(
    sb: Client,
    table: str,
    payloads: Sequence[Dict[str, Any]],
    tolerated_columns: Iterable[str],
) -> Optional[Dict[str, Any]]:
    """
    Inserts the first payload shape the live table accepts and returns the
    inserted row. Only errors naming one of `tolerated_columns` move on to the
    next shape; anything else (unique violations included) is raised.
    """
    tolerated = list(tolerated_columns)
    last_error: Optional[APIError] = None
    for payload in payloads:
        try:
            return first_row(sb.table(table).insert(payload).execute())
        except APIError as e:
            if not is_missing_any_column_error(e, tolerated):
                raise
            last_error = e
    if last_error:
        raise last_error
    return None


def update_with_fallback(
    sb: Client,
    table: str,
    payloads: Sequence[Dict[str, Any]],
    tolerated_columns: Iterable[str],
    match: Dict[str, Any],
) -> Dict[str, Any]:
    """Same as insert_with_fallback for an update filtered by `match`."""
    tolerated = list(tolerated_columns)
    last_error: Optional[APIError] = None
    for payload in payloads:
        query = sb.table(table).update(payload)
        for column, value in match.items():
            query = query.eq(column, value)
        try:
            query.execute()
            return payload
        except APIError as e:
            if not is_missing_any_column_error(e, tolerated):
                raise
            last_error = e
    if last_error:
        raise last_error
    return {}


# -------------------------
# Misc
# -------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        uuid.UUID(value.strip())
        return True
    except ValueError:
        return False
