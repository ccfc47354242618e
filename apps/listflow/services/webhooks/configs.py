# apps/listflow/services/webhooks/configs.py
"""
Automation webhook configs (`webhook_configs`).

Expected columns: id, name, target_url, method, headers (jsonb), enabled,
scope ('automation' | 'generic'), description, product_id, created_at,
updated_at. Only id/name/target_url/method/headers/enabled are guaranteed;
everything else is written when the live schema accepts it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from apps.listflow.db import (
    first_row,
    is_missing_column_error,
    is_recoverable_column_error,
    is_unique_violation,
    require_supabase,
    rows_of,
    select_with_fallback,
)
from apps.listflow.services.n8n import normalize_headers, normalize_method

log = logging.getLogger("listflow.webhook_configs")

LIST_SELECTS = (
    ("id,name,description,scope,target_url,method,headers,enabled,product_id,created_at,updated_at", True),
    ("id,name,description,scope,target_url,method,headers,enabled,created_at,updated_at", True),
    ("id,name,target_url,method,headers,enabled,product_id,created_at,updated_at", False),
    ("id,name,target_url,method,headers,enabled,created_at,updated_at", False),
)


class WebhookConfigError(ValueError):
    pass


class WebhookConfigConflict(RuntimeError):
    pass


def is_active_automation_webhook(config: Optional[Dict[str, Any]]) -> bool:
    if not config:
        return False
    if config.get("enabled") is False:
        return False
    return config.get("scope") != "generic"


def load_webhook_configs(sb=None) -> List[Dict[str, Any]]:
    """All configs, newest first. Without a `scope` column every row is automation."""
    sb = sb or require_supabase()
    try:
        res = (
            sb.table("webhook_configs")
            .select("id,target_url,method,headers,enabled,scope")
            .order("created_at", desc=True)
            .limit(1000)
            .execute()
        )
        return rows_of(res)
    except APIError as e:
        if not is_missing_column_error(e, "scope"):
            raise
    res = (
        sb.table("webhook_configs")
        .select("id,target_url,method,headers,enabled")
        .order("created_at", desc=True)
        .limit(1000)
        .execute()
    )
    return [{**row, "scope": "automation"} for row in rows_of(res)]


def get_webhook_config(config_id: str, sb=None) -> Optional[Dict[str, Any]]:
    sb = sb or require_supabase()
    rows, _ = select_with_fallback(
        lambda select: sb.table("webhook_configs").select(select).eq("id", config_id).limit(1).execute(),
        [
            "id,name,target_url,method,headers,enabled,scope,product_id",
            "id,name,target_url,method,headers,enabled,scope",
            "id,name,target_url,method,headers,enabled",
        ],
    )
    if not rows:
        return None
    row = rows[0]
    row.setdefault("scope", "automation")
    return row


def list_automation_configs(sb=None) -> List[Dict[str, Any]]:
    sb = sb or require_supabase()
    for select, has_scope in LIST_SELECTS:
        query = sb.table("webhook_configs").select(select).order("updated_at", desc=True).limit(500)
        if has_scope:
            query = query.eq("scope", "automation")
        try:
            return rows_of(query.execute())
        except APIError as e:
            if not is_recoverable_column_error(e):
                raise
    return []


def resolve_product_title(product_id: str, sb=None) -> str:
    sb = sb or require_supabase()
    for select in ("id,title_tr,title_en", "id,title_tr", "id,title"):
        try:
            row = first_row(sb.table("products").select(select).eq("id", product_id).limit(1).execute())
        except APIError as e:
            if not is_recoverable_column_error(e):
                raise
            continue
        if not row:
            raise WebhookConfigError("Selected product was not found.")
        for key in ("title_tr", "title_en", "title"):
            title = (row.get(key) or "").strip()
            if title:
                return title
        raise WebhookConfigError("Selected product has no title.")
    raise WebhookConfigError("Product title could not be resolved.")


def parse_config_body(body: Dict[str, Any], sb=None) -> Dict[str, Any]:
    target_url = body.get("targetUrl").strip() if isinstance(body.get("targetUrl"), str) else ""
    description = body.get("description").strip() if isinstance(body.get("description"), str) else ""
    product_id = body.get("productId").strip() if isinstance(body.get("productId"), str) else ""
    if not target_url:
        raise WebhookConfigError("targetUrl is required")
    if not product_id:
        raise WebhookConfigError("productId is required")

    name = body.get("name").strip() if isinstance(body.get("name"), str) else ""
    return {
        "name": name or resolve_product_title(product_id, sb),
        "target_url": target_url,
        "method": normalize_method(body.get("method")),
        "headers": normalize_headers(body.get("headers")),
        "description": description or None,
        "scope": "automation",
        "enabled": True if body.get("enabled") is None else bool(body.get("enabled")),
        "product_id": product_id,
    }


def create_webhook_config(payload: Dict[str, Any], sb=None) -> Optional[Dict[str, Any]]:
    """
    Inserts a config, dropping optional columns the table does not have.
    Raises WebhookConfigConflict on a unique violation.
    """
    sb = sb or require_supabase()
    now_iso = datetime.now(timezone.utc).isoformat()
    base = {k: payload[k] for k in ("name", "target_url", "method", "headers", "enabled")}
    candidates = [
        {**payload, "updated_at": now_iso},
        {**base, "scope": payload["scope"], "product_id": payload["product_id"]},
        {**base, "scope": payload["scope"], "updated_at": now_iso},
        {**base, "scope": payload["scope"]},
        {**base, "updated_at": now_iso},
        base,
    ]

    last_error: Optional[APIError] = None
    for candidate in candidates:
        try:
            row = first_row(sb.table("webhook_configs").insert(candidate).execute())
            log.info("webhook config created id=%s", (row or {}).get("id"))
            return row
        except APIError as e:
            if is_unique_violation(e):
                raise WebhookConfigConflict(e.message) from e
            last_error = e
            if not is_recoverable_column_error(e):
                break
    raise last_error or RuntimeError("Config create failed")


def parse_config_patch(body: Dict[str, Any], sb=None) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    if isinstance(body.get("targetUrl"), str):
        patch["target_url"] = body["targetUrl"].strip()
    if isinstance(body.get("method"), str):
        patch["method"] = normalize_method(body["method"])
    if "headers" in body:
        patch["headers"] = normalize_headers(body.get("headers"))
    if isinstance(body.get("description"), str):
        patch["description"] = body["description"].strip() or None
    if "enabled" in body:
        patch["enabled"] = bool(body.get("enabled"))
    if "productId" in body:
        product_id = body["productId"].strip() if isinstance(body.get("productId"), str) else ""
        if not product_id:
            raise WebhookConfigError("productId is required")
        patch["product_id"] = product_id
        patch["name"] = resolve_product_title(product_id, sb)
    patch["scope"] = "automation"
    patch["updated_at"] = datetime.now(timezone.utc).isoformat()
    return patch


def update_webhook_config(config_id: str, patch: Dict[str, Any], sb=None) -> Optional[Dict[str, Any]]:
    sb = sb or require_supabase()
    optional = ("description", "scope", "product_id", "name")
    candidates = [
        patch,
        {k: v for k, v in patch.items() if k not in optional + ("updated_at",)},
        {k: v for k, v in patch.items() if k not in optional},
    ]
    last_error: Optional[APIError] = None
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return first_row(sb.table("webhook_configs").update(candidate).eq("id", config_id).execute())
        except APIError as e:
            if is_unique_violation(e):
                raise WebhookConfigConflict(e.message) from e
            last_error = e
            if not is_recoverable_column_error(e):
                break
    raise last_error or RuntimeError("Config update failed")


def delete_webhook_config(config_id: str, sb=None) -> None:
    sb = sb or require_supabase()
    sb.table("webhook_configs").delete().eq("id", config_id).execute()
    log.info("webhook config deleted id=%s", config_id)
