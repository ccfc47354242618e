# apps/listflow/services/admin/automation_switch.py
"""
Admin-driven switch of a store's automation webhook.

The store is re-bound to the target config, the binding is mirrored into
webhook_logs for schemas without the stores columns, and the new webhook is
fired once right away as a `manual_switch` scheduler job.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

from apps.listflow.db import (
    first_row,
    is_missing_any_column_error,
    is_missing_column_error,
    is_missing_table_error,
    is_unique_violation,
    require_supabase,
    select_with_fallback,
    update_with_fallback,
)
from apps.listflow.services.cron_job_org import sync_scheduler_cron_job_lifecycle
from apps.listflow.services.n8n import dispatch_n8n_trigger
from apps.listflow.services.scheduler.engine import insert_scheduler_job, update_scheduler_job
from apps.listflow.services.scheduler.idempotency import build_manual_switch_idempotency_key
from apps.listflow.services.subscriptions import ACTIVE_STATUSES, subscription_month_index
from apps.listflow.services.webhooks.configs import get_webhook_config
from apps.listflow.services.webhooks.logs import insert_store_webhook_mapping

log = logging.getLogger("listflow.automation_switch")

STORE_SELECTS = [
    "id,user_id,product_id,active_webhook_config_id",
    "id,user_id,active_webhook_config_id",
    "id,user_id,product_id",
    "id,user_id",
]
STORE_BINDING_COLUMNS = ("product_id", "active_webhook_config_id", "automation_updated_at", "automation_updated_by")
TRANSITIONS_TABLE = "store_automation_transitions"


class AutomationSwitchError(Exception):
    def __init__(self, message: str, status: int = 400, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.extra = extra


# -------------------------
# Loads
# -------------------------

def load_store(store_id: str, sb) -> Optional[Dict[str, Any]]:
    rows, _ = select_with_fallback(
        lambda select: sb.table("stores").select(select).eq("id", store_id).limit(1).execute(),
        STORE_SELECTS,
    )
    if not rows:
        return None
    row = rows[0]
    return {
        "id": row["id"],
        "user_id": row.get("user_id"),
        "product_id": row.get("product_id"),
        "active_webhook_config_id": row.get("active_webhook_config_id"),
    }


def load_active_subscription_for_store(store_id: str, sb) -> Optional[Dict[str, Any]]:
    """Newest active/trialing subscription bound to the store (store_id, then legacy shop_id)."""
    for column in ("store_id", "shop_id"):
        try:
            res = (
                sb.table("subscriptions")
                .select(f"id,user_id,plan,status,created_at,current_period_end,{column}")
                .eq(column, store_id)
                .in_("status", list(ACTIVE_STATUSES))
                .order("updated_at", desc=True)
                .limit(1)
                .execute()
            )
            return first_row(res)
        except APIError as e:
            if column != "store_id" or not is_missing_column_error(e, "store_id"):
                raise
    return None


def find_recent_switch_job(idempotency_key: str, sb) -> Optional[Dict[str, Any]]:
    res = (
        sb.table("scheduler_jobs")
        .select("id,status")
        .eq("idempotency_key", idempotency_key)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return first_row(res)


# -------------------------
# Writes
# -------------------------

def insert_transition(sb, store, subscription, webhook_id, month_index, admin_id) -> Optional[str]:
    try:
        row = first_row(
            sb.table(TRANSITIONS_TABLE)
            .insert(
                {
                    "store_id": store["id"],
                    "subscription_id": subscription["id"],
                    "from_webhook_config_id": store.get("active_webhook_config_id"),
                    "to_webhook_config_id": webhook_id,
                    "month_index": month_index,
                    "status": "processing",
                    "created_by": admin_id,
                }
            )
            .execute()
        )
    except APIError as e:
        if is_missing_table_error(e):
            log.info("%s table missing; transition not recorded", TRANSITIONS_TABLE)
            return None
        raise
    return (row or {}).get("id")


def update_transition(sb, transition_id: Optional[str], patch: Dict[str, Any]) -> None:
    if not transition_id:
        return
    try:
        sb.table(TRANSITIONS_TABLE).update(patch).eq("id", transition_id).execute()
    except APIError as e:
        log.warning("transition %s not updated: %s", transition_id, e.message)


def bind_store_webhook(sb, store_id: str, webhook_id: str, product_id: Optional[str], admin_id: str) -> None:
    now_iso = datetime.now(timezone.utc).isoformat()
    payloads = [
        {
            "product_id": product_id,
            "active_webhook_config_id": webhook_id,
            "automation_updated_at": now_iso,
            "automation_updated_by": admin_id,
        },
        {"active_webhook_config_id": webhook_id, "automation_updated_at": now_iso, "automation_updated_by": admin_id},
        {"active_webhook_config_id": webhook_id, "automation_updated_at": now_iso},
        {"active_webhook_config_id": webhook_id},
        # No binding columns at all; the webhook_logs mapping carries it.
        {"product_id": product_id} if product_id else {},
    ]
    try:
        update_with_fallback(sb, "stores", [p for p in payloads if p], STORE_BINDING_COLUMNS, {"id": store_id})
    except APIError as e:
        if not is_missing_any_column_error(e, STORE_BINDING_COLUMNS):
            raise
        log.info("store %s has no binding columns; relying on mapping log", store_id)


# -------------------------
# Switch
# -------------------------

def switch_store_automation(store_id: str, webhook_config_id: str, admin: Dict[str, Any], sb=None) -> Dict[str, Any]:
    sb = sb or require_supabase()

    store = load_store(store_id, sb)
    if not store:
        raise AutomationSwitchError("Store not found.", 404, "STORE_NOT_FOUND")

    subscription = load_active_subscription_for_store(store["id"], sb)
    if not subscription:
        raise AutomationSwitchError("No active or trialing subscription for this store.", 400, "SUBSCRIPTION_INACTIVE")
    month_index = subscription_month_index(subscription.get("created_at"))

    webhook = get_webhook_config(webhook_config_id, sb)
    if not webhook:
        raise AutomationSwitchError("Target webhook not found.", 404, "WEBHOOK_NOT_FOUND")
    if webhook.get("enabled") is False:
        raise AutomationSwitchError(
            f"Target webhook is disabled: {webhook.get('name')} ({webhook['id']}).", 400, "WEBHOOK_DISABLED"
        )
    if webhook.get("scope") and webhook["scope"] != "automation":
        raise AutomationSwitchError(
            f"Target webhook is not automation scoped: {webhook.get('name')} ({webhook['id']}).",
            400,
            "WEBHOOK_SCOPE_INVALID",
        )

    now = datetime.now(timezone.utc)
    now_iso = now.isoformat()
    idempotency_key = build_manual_switch_idempotency_key(store["id"], webhook["id"], now)

    existing = find_recent_switch_job(idempotency_key, sb)
    if existing and existing.get("status") in ("processing", "success"):
        raise AutomationSwitchError(
            "The same switch was already processed this minute.",
            409,
            "MANUAL_SWITCH_DUPLICATE",
            idempotencyKey=idempotency_key,
        )

    admin_id = admin["id"]
    transition_id = insert_transition(sb, store, subscription, webhook["id"], month_index, admin_id)

    try:
        bind_store_webhook(sb, store["id"], webhook["id"], webhook.get("product_id") or store.get("product_id"), admin_id)
    except APIError as e:
        update_transition(sb, transition_id, {"status": "failed", "trigger_response_body": e.message})
        raise

    insert_store_webhook_mapping(store["id"], webhook["id"], idempotency_key, created_by=admin_id, sb=sb)
    cron_sync = sync_scheduler_cron_job_lifecycle()

    try:
        job = insert_scheduler_job(
            sb,
            {**subscription, "user_id": store.get("user_id") or subscription.get("user_id")},
            idempotency_key,
            now_iso,
            "processing",
            store_id=store["id"],
            webhook_config_id=webhook["id"],
            trigger_type="manual_switch",
            request_payload={"client_id": store["id"]},
        )
    except APIError as e:
        update_transition(sb, transition_id, {"status": "failed", "trigger_response_body": e.message})
        if is_unique_violation(e):
            raise AutomationSwitchError(
                "The same switch was already processed this minute.",
                409,
                "MANUAL_SWITCH_DUPLICATE",
                idempotencyKey=idempotency_key,
            ) from e
        raise
    job_id = (job or {}).get("id")

    dispatch = dispatch_n8n_trigger(
        url=webhook["target_url"],
        payload={"client_id": store["id"]},
        idempotency_key=idempotency_key,
        method=webhook.get("method") or "POST",
        headers=webhook.get("headers") or {},
        triggered_at=now_iso,
    )
    status = "success" if dispatch.ok else "failed"
    if job_id:
        update_scheduler_job(
            sb,
            job_id,
            status,
            response_status=dispatch.status,
            response_payload=dispatch.body,
            error_message=None if dispatch.ok else f"HTTP {dispatch.status}",
        )
    update_transition(
        sb,
        transition_id,
        {"status": status, "trigger_response_status": dispatch.status, "trigger_response_body": dispatch.body},
    )
    log.info("store %s switched to webhook %s (dispatch %s)", store["id"], webhook["id"], dispatch.status)

    return {
        "ok": dispatch.ok,
        "storeId": store["id"],
        "webhookConfigId": webhook["id"],
        "jobId": job_id,
        "transitionId": transition_id,
        "monthIndex": month_index,
        "idempotencyKey": idempotency_key,
        "cronSync": cron_sync,
        "targetWebhook": {"id": webhook["id"], "name": webhook.get("name")},
        "dispatch": {"status": dispatch.status, "body": dispatch.body},
    }
