# apps/listflow/services/webhooks/overview.py
"""
Read model behind the admin webhooks page: configs, recent logs, store
automation transitions, scheduler jobs and the product labels used to pick
a config's product. Every table is optional; a missing one reads as empty.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from postgrest.exceptions import APIError

from apps.listflow.db import is_missing_table_error, is_recoverable_column_error, require_supabase, rows_of
from apps.listflow.services.cron_job_org import scheduler_tick_url
from apps.listflow.services.scheduler.idempotency import parse_iso, store_id_from_key
from apps.listflow.services.subscriptions import resolve_store_id_from_subscription
from apps.listflow.services.webhooks.logs import CRON_TICK, load_store_webhook_mappings
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.webhooks_overview")

STALE_TICK_AFTER = timedelta(seconds=90)
SELF_TICK_TIMEOUT_SECONDS = 10

CONFIG_SELECTS = (
    "id,name,description,scope,target_url,method,headers,enabled,product_id,created_at,updated_at",
    "id,name,description,target_url,method,headers,enabled,created_at,updated_at",
    "id,name,target_url,method,headers,enabled,created_at,updated_at",
)
LOG_SELECTS = (
    "id,request_url,request_method,request_headers,request_body,response_status,response_body,duration_ms,created_by,created_at",
    "id,request_url,request_method,request_body,response_status,response_body,duration_ms,created_at",
)
TRANSITION_SELECTS = (
    "id,store_id,subscription_id,from_webhook_config_id,to_webhook_config_id,month_index,status,trigger_response_status,trigger_response_body,created_by,created_at,updated_at",
    "id,store_id,subscription_id,from_webhook_config_id,to_webhook_config_id,month_index,status,created_at",
)
JOB_SELECTS = (
    "id,subscription_id,user_id,store_id,webhook_config_id,plan,status,trigger_type,idempotency_key,run_at,response_status,error_message,created_at,updated_at",
    "id,subscription_id,user_id,plan,status,idempotency_key,run_at,response_status,error_message,created_at",
)
PRODUCT_SELECTS = ("id,title_tr,title_en,category_id", "id,title_tr,title_en", "id,title")
CATEGORY_SELECTS = ("id,name_tr,name_en", "id,name")


# -------------------------
# Reads
# -------------------------

def _read_table(
    sb,
    table: str,
    selects: Sequence[str],
    order_column: Optional[str] = "created_at",
    limit: int = 500,
    where: Optional[Callable[[Any], Any]] = None,
) -> List[Dict[str, Any]]:
    """Tries each column set, first ordered then unordered. A missing table is []."""
    for select in selects:
        for ordered in ((True, False) if order_column else (False,)):
            query = sb.table(table).select(select)
            if where:
                query = where(query)
            if ordered:
                query = query.order(order_column, desc=True)
            try:
                return rows_of(query.limit(limit).execute())
            except APIError as e:
                if is_missing_table_error(e):
                    return []
                if not is_recoverable_column_error(e):
                    raise
    return []


def _label(row: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = (row.get(key) or "").strip() if isinstance(row.get(key), str) else ""
        if value:
            return value
    return row.get("id") or ""


def product_options(sb) -> List[Dict[str, Any]]:
    products = _read_table(sb, "products", PRODUCT_SELECTS, order_column=None, limit=1000)
    categories = {c["id"]: _label(c, "name_tr", "name_en", "name") for c in _read_table(sb, "categories", CATEGORY_SELECTS, order_column=None, limit=1000)}
    options = []
    for product in products:
        title = _label(product, "title_tr", "title_en", "title")
        category = categories.get(product.get("category_id"))
        options.append({"id": product["id"], "label": f"{category} / {title}" if category else title})
    options.sort(key=lambda o: o["label"].lower())
    return options


def _stores_by_id(store_ids: List[str], sb) -> Dict[str, Dict[str, Any]]:
    if not store_ids:
        return {}
    rows = _read_table(
        sb,
        "stores",
        ("id,store_name,name,active_webhook_config_id", "id,store_name,active_webhook_config_id", "id,store_name", "id"),
        order_column=None,
        limit=len(store_ids),
        where=lambda q: q.in_("id", store_ids),
    )
    return {row["id"]: row for row in rows}


def _subscription_stores(subscription_ids: List[str], sb) -> Dict[str, Optional[str]]:
    if not subscription_ids:
        return {}
    rows = _read_table(
        sb,
        "subscriptions",
        ("id,store_id,shop_id", "id,shop_id", "id,store_id"),
        order_column=None,
        limit=len(subscription_ids),
        where=lambda q: q.in_("id", subscription_ids),
    )
    return {row["id"]: resolve_store_id_from_subscription(row) for row in rows}


def _key_parts(job: Dict[str, Any]) -> List[str]:
    return (job.get("idempotency_key") or "").split(":")


def resolve_jobs(jobs: List[Dict[str, Any]], sb) -> List[Dict[str, Any]]:
    """Fills store_id, store_name, trigger_type and webhook_config_id from whatever the row lacks."""
    sub_stores = _subscription_stores(sorted({j["subscription_id"] for j in jobs if j.get("subscription_id")}), sb)

    def store_of(job):
        return job.get("store_id") or sub_stores.get(job.get("subscription_id")) or store_id_from_key(job.get("idempotency_key"))

    store_ids = sorted({s for s in map(store_of, jobs) if s})
    stores = _stores_by_id(store_ids, sb)
    mappings = load_store_webhook_mappings(store_ids, sb)

    out = []
    for job in jobs:
        store_id = store_of(job)
        store = stores.get(store_id) or {}
        parts = _key_parts(job)
        trigger = job.get("trigger_type") or (parts[0] if parts[0] in ("scheduled", "manual_switch", "activation") else "scheduled")
        webhook_id = (
            job.get("webhook_config_id")
            or (parts[2] if parts[0] == "manual_switch" and len(parts) >= 4 else None)
            or store.get("active_webhook_config_id")
            or (mappings.get(store_id) or [None])[0]
        )
        out.append(
            {
                **job,
                "store_id": store_id,
                "store_name": store.get("store_name") or store.get("name"),
                "trigger_type": trigger,
                "webhook_config_id": webhook_id,
            }
        )
    return out


def transitions_from_jobs(jobs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Manual-switch jobs shaped like transition rows, for schemas without the table."""
    rows = []
    for job in jobs:
        if job.get("trigger_type") != "manual_switch":
            continue
        rows.append(
            {
                "id": job.get("id"),
                "store_id": job.get("store_id"),
                "subscription_id": job.get("subscription_id"),
                "from_webhook_config_id": None,
                "to_webhook_config_id": job.get("webhook_config_id"),
                "month_index": None,
                "status": job.get("status"),
                "trigger_response_status": job.get("response_status"),
                "created_at": job.get("created_at"),
            }
        )
    return rows


# -------------------------
# Stale tick
# -------------------------

def trigger_tick_if_stale(logs: List[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    """
    Pokes the scheduler tick when the newest CRON_TICK row is older than
    STALE_TICK_AFTER, so an admin opening the page sees fresh jobs even when
    the cron provider lags. Errors are logged and dropped.
    """
    secret = settings.CRON_SECRET
    if not secret or not (settings.CRON_SCHEDULER_BASE_URL or settings.APP_URL):
        return False
    now = now or datetime.now(timezone.utc)
    ticks = [parse_iso(row.get("created_at")) for row in logs if row.get("request_method") == CRON_TICK]
    latest = max((t for t in ticks if t), default=None)
    if latest and now - latest < STALE_TICK_AFTER:
        return False
    try:
        requests.post(
            scheduler_tick_url(),
            headers={"Authorization": f"Bearer {secret}", "x-listflow-tick-source": "admin-overview"},
            timeout=SELF_TICK_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        log.warning("overview tick trigger failed: %s", e)
        return False
    return True


# -------------------------
# Overview
# -------------------------

def load_overview(sb=None) -> Dict[str, Any]:
    sb = sb or require_supabase()
    logs = _read_table(sb, "webhook_logs", LOG_SELECTS, limit=500)
    trigger_tick_if_stale(logs)

    jobs = resolve_jobs(_read_table(sb, "scheduler_jobs", JOB_SELECTS, limit=500), sb)
    transitions = _read_table(sb, "store_automation_transitions", TRANSITION_SELECTS, limit=200)
    if not transitions:
        transitions = transitions_from_jobs(jobs)

    return {
        "configs": _read_table(sb, "webhook_configs", CONFIG_SELECTS, order_column="updated_at", limit=500),
        "logs": logs,
        "transitions": transitions,
        "jobs": jobs,
        "products": product_options(sb),
    }
