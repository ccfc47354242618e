import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from postgrest.exceptions import APIError

from apps.listflow.db import (
    is_missing_any_column_error,
    is_missing_table_error,
    require_supabase,
    rows_of,
)
from apps.listflow.services.webhooks.redaction import redact_sensitive

log = logging.getLogger("listflow.webhook_logs")

STORE_WEBHOOK_MAP = "STORE_WEBHOOK_MAP"
CRON_TICK = "CRON_TICK"

_OPTIONAL_COLUMNS = ("request_headers", "request_body", "response_status", "response_body", "duration_ms", "created_by")


def safe_serialize(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def insert_webhook_log(
    request_url: str,
    request_method: str,
    request_headers: Optional[Dict[str, Any]] = None,
    request_body: Optional[Dict[str, Any]] = None,
    response_status: Optional[int] = None,
    response_body: Any = None,
    duration_ms: int = 0,
    created_by: Optional[str] = None,
    sb=None,
) -> bool:
    """
    Best-effort audit row in `webhook_logs`. Headers and body are redacted.
    Older schemas lack some columns, so narrower shapes are tried in turn.
    Returns False when nothing could be written.
    """
    sb = sb or require_supabase()
    full = {
        "request_url": request_url,
        "request_method": request_method,
        "request_headers": redact_sensitive(request_headers or {}),
        "request_body": redact_sensitive(request_body or {}),
        "response_status": response_status,
        "response_body": safe_serialize(response_body),
        "duration_ms": duration_ms,
        "created_by": created_by,
    }
    shapes: List[Dict[str, Any]] = [
        full,
        {k: v for k, v in full.items() if k != "created_by"},
        {k: v for k, v in full.items() if k not in ("created_by", "request_headers")},
        {k: v for k, v in full.items() if k not in ("created_by", "request_headers", "request_body")},
    ]
    for shape in shapes:
        try:
            sb.table("webhook_logs").insert(shape).execute()
            return True
        except APIError as e:
            if is_missing_table_error(e):
                log.warning("webhook_logs table missing, %s %s not recorded", request_method, request_url)
                return False
            if not is_missing_any_column_error(e, _OPTIONAL_COLUMNS):
                log.warning("webhook log insert failed: %s", e.message)
                return False
    return False


def insert_store_webhook_mapping(
    store_id: str,
    webhook_config_id: str,
    idempotency_key: str,
    created_by: Optional[str] = None,
    activation: bool = False,
    sb=None,
) -> bool:
    return insert_webhook_log(
        request_url="store-webhook-mapping-activation" if activation else "store-webhook-mapping",
        request_method=STORE_WEBHOOK_MAP,
        request_body={
            "store_id": store_id,
            "webhook_config_id": webhook_config_id,
            "idempotency_key": idempotency_key,
        },
        response_status=200,
        response_body="mapping_saved",
        created_by=created_by,
        sb=sb,
    )
def _mapping_rows(store_ids: List[str], sb) -> Iterator[Tuple[str, str, Optional[str]]]:
    """(store_id, webhook_config_id, created_at) per binding row, newest first."""
    try:
        res = (
            sb.table("webhook_logs")
            .select("request_body,request_url,created_at")
            .eq("request_method", STORE_WEBHOOK_MAP)
            .order("created_at", desc=True)
            .limit(5000)
            .execute()
        )
    except APIError as e:
        log.warning("store webhook mapping lookup failed: %s", e.message)
        return

    allowed = set(store_ids)
    for row in rows_of(res):
        body = row.get("request_body") if isinstance(row.get("request_body"), dict) else {}
        source = row.get("request_url")
        key = body.get("idempotency_key") if isinstance(body.get("idempotency_key"), str) else ""
        manual = source == "store-webhook-mapping" or key.startswith("manual_switch:")
        activation = source == "store-webhook-mapping-activation" or key.startswith("activation:")
        if not (manual or activation):
            continue
        store_id = body.get("store_id")
        config_id = body.get("webhook_config_id")
        if not isinstance(store_id, str) or not isinstance(config_id, str) or store_id not in allowed:
            continue
        yield store_id, config_id, row.get("created_at")


def load_store_webhook_mappings(store_ids: List[str], sb=None) -> Dict[str, List[str]]:
    """
    store_id -> webhook config ids bound through mapping log rows, newest
    first. Only manual-switch and activation bindings count.
    """
    if not store_ids:
        return {}
    sb = sb or require_supabase()
    mapping: Dict[str, List[str]] = {}
    for store_id, config_id, _ in _mapping_rows(store_ids, sb):
        current = mapping.setdefault(store_id, [])
        if config_id not in current:
            current.append(config_id)
    return mapping


def load_store_mapping_times(store_ids: List[str], sb=None) -> Dict[str, str]:
    """store_id -> created_at of its newest binding row."""
    if not store_ids:
        return {}
    sb = sb or require_supabase()
    times: Dict[str, str] = {}
    for store_id, _, created_at in _mapping_rows(store_ids, sb):
        if created_at and store_id not in times:
            times[store_id] = created_at
    return times
