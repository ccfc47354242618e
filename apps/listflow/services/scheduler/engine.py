# apps/listflow/services/scheduler/engine.py
"""
Cron-driven automation scheduler.

Every tick walks the active subscriptions, works out the next slot each
store is due for (plan window after the last successful run), and fires the
store's automation webhook once per slot. `scheduler_jobs` rows keyed by an
idempotency key are the only state: a unique violation on insert means
another tick got there first.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from apps.listflow.db import (
    insert_with_fallback,
    is_missing_any_column_error,
    is_missing_column_error,
    is_unique_violation,
    is_uuid,
    require_supabase,
    rows_of,
    update_with_fallback,
)
from apps.listflow.services.n8n import dispatch_n8n_trigger
from apps.listflow.services.scheduler.idempotency import (
    build_scheduled_idempotency_key,
    extract_scheduled_slot_due_iso,
    get_plan_window_hours,
    parse_iso,
    store_id_from_key,
    to_iso_z,
)
from apps.listflow.services.subscriptions import (
    is_subscription_active,
    load_active_subscriptions,
    resolve_store_id_from_subscription,
)
from apps.listflow.services.webhooks.configs import is_active_automation_webhook, load_webhook_configs
from apps.listflow.services.webhooks.logs import insert_webhook_log, load_store_webhook_mappings

log = logging.getLogger("listflow.scheduler")

MAX_RETRY_ATTEMPTS = 5
RETRY_BACKOFF_MINUTES = (1, 2, 4, 8, 16)

JOB_SELECTS = (
    "id,subscription_id,store_id,idempotency_key,status,trigger_type,run_at,retry_count,error_message,created_at,updated_at",
    "id,subscription_id,store_id,idempotency_key,status,trigger_type,run_at,error_message,created_at,updated_at",
    "id,subscription_id,idempotency_key,status,trigger_type,run_at,error_message,created_at,updated_at",
    "id,subscription_id,idempotency_key,status,run_at,error_message,created_at,updated_at",
    "id,subscription_id,idempotency_key,status,run_at,created_at",
)
JOB_OPTIONAL_COLUMNS = ("store_id", "trigger_type", "retry_count", "error_message", "updated_at")
JOB_INSERT_OPTIONAL = (
    "store_id",
    "webhook_config_id",
    "trigger_type",
    "request_payload",
    "error_message",
    "retry_count",
    "updated_at",
)
JOB_UPDATE_OPTIONAL = ("response_status", "response_payload", "error_message", "retry_count", "run_at", "updated_at")


@dataclass
class TickSummary:
    total: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0
    reason_breakdown: Dict[str, int] = field(default_factory=dict)

    def _reason(self, reason: str) -> None:
        self.reason_breakdown[reason] = self.reason_breakdown.get(reason, 0) + 1

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self._reason(reason)

    def fail(self, reason: str) -> None:
        self.failed += 1
        self._reason(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "triggered": self.triggered,
            "skipped": self.skipped,
            "failed": self.failed,
            "reasonBreakdown": dict(self.reason_breakdown),
        }


# -------------------------
# Job helpers
# -------------------------

def _ms(value: Optional[str]) -> Optional[float]:
    parsed = parse_iso(value)
    return parsed.timestamp() * 1000 if parsed else None


def _key(job: Dict[str, Any]) -> str:
    return job.get("idempotency_key") or ""


def _trigger(job: Dict[str, Any]) -> str:
    return (job.get("trigger_type") or "").lower()


def job_store_id(job: Dict[str, Any]) -> Optional[str]:
    return job.get("store_id") or store_id_from_key(job.get("idempotency_key"))


def is_scheduled_job(job: Dict[str, Any]) -> bool:
    return _trigger(job) == "scheduled" or _key(job).startswith("scheduled:")


def is_cadence_job(job: Dict[str, Any]) -> bool:
    """Jobs whose success restarts the plan window."""
    if _trigger(job) in ("scheduled", "manual_switch", "activation"):
        return True
    return _key(job).startswith(("scheduled:", "manual_switch:", "activation:"))


def matches_store(job: Dict[str, Any], store_id: str) -> bool:
    resolved = job_store_id(job)
    return resolved == store_id if resolved else True


def job_timestamp_ms(job: Dict[str, Any]) -> float:
    for key in ("run_at", "updated_at", "created_at"):
        ms = _ms(job.get(key))
        if ms is not None:
            return ms
    return 0


def retry_delay_minutes(retry_count: int) -> int:
    index = min(max(1, retry_count) - 1, len(RETRY_BACKOFF_MINUTES) - 1)
    return RETRY_BACKOFF_MINUTES[index]


def most_recent_cadence_success(jobs: List[Dict[str, Any]], store_id: str) -> Optional[str]:
    for job in jobs:
        if not matches_store(job, store_id) or (job.get("status") or "").lower() != "success":
            continue
        if not is_cadence_job(job):
            continue
        for key in ("run_at", "updated_at", "created_at"):
            parsed = parse_iso(job.get(key))
            if parsed:
                return to_iso_z(parsed)
    return None


def latest_scheduled_slot_due(jobs: List[Dict[str, Any]], store_id: str) -> Optional[str]:
    latest_iso, latest_ms = None, -1.0
    for job in jobs:
        if not matches_store(job, store_id) or not is_scheduled_job(job):
            continue
        slot_iso = extract_scheduled_slot_due_iso(job.get("idempotency_key"))
        slot_ms = _ms(slot_iso)
        if slot_ms is not None and slot_ms > latest_ms:
            latest_iso, latest_ms = slot_iso, slot_ms
    return latest_iso


def find_slot_job(jobs: List[Dict[str, Any]], store_id: str, key: str) -> Optional[Dict[str, Any]]:
    for job in jobs:
        if matches_store(job, store_id) and is_scheduled_job(job) and job.get("idempotency_key") == key:
            return job
    return None


# -------------------------
# Loading
# -------------------------

def load_stores(store_ids: List[str], sb) -> List[Dict[str, Any]]:
    if not store_ids:
        return []
    try:
        res = sb.table("stores").select("id,active_webhook_config_id").in_("id", store_ids).execute()
        return rows_of(res)
    except APIError as e:
        if not is_missing_column_error(e, "active_webhook_config_id"):
            raise
    res = sb.table("stores").select("id").in_("id", store_ids).execute()
    return [{"id": row["id"], "active_webhook_config_id": None} for row in rows_of(res)]


def load_scheduler_jobs(subscription_ids: List[str], sb) -> List[Dict[str, Any]]:
    if not subscription_ids:
        return []
    last_error: Optional[APIError] = None
    for select in JOB_SELECTS:
        try:
            res = (
                sb.table("scheduler_jobs")
                .select(select)
                .in_("subscription_id", subscription_ids)
                .order("run_at", desc=True)
                .limit(10000)
                .execute()
            )
        except APIError as e:
            if not is_missing_any_column_error(e, JOB_OPTIONAL_COLUMNS):
                raise
            last_error = e
            continue
        return rows_of(res)
    raise last_error or RuntimeError("scheduler jobs could not be loaded")


# -------------------------
# Job writes
# -------------------------

def insert_scheduler_job(
    sb,
    subscription: Dict[str, Any],
    idempotency_key: str,
    run_at: str,
    status: str,
    store_id: Optional[str] = None,
    webhook_config_id: Optional[str] = None,
    trigger_type: str = "scheduled",
    request_payload: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Inserts a job row, narrowing the payload for older schemas. Unique
    violations propagate so callers can treat them as "already taken".
    """
    now_iso = datetime.now(timezone.utc).isoformat()
    core = {
        "subscription_id": subscription["id"],
        "user_id": subscription.get("user_id"),
        "plan": subscription.get("plan"),
        "status": status,
        "idempotency_key": idempotency_key,
        "run_at": run_at,
        "error_message": error_message,
    }
    linked = {**core, "store_id": store_id, "webhook_config_id": webhook_config_id}
    typed = {**linked, "trigger_type": trigger_type, "request_payload": request_payload}
    payloads = [
        {**typed, "retry_count": 0, "updated_at": now_iso},
        {**typed, "updated_at": now_iso},
        {**linked, "updated_at": now_iso},
        {**core, "updated_at": now_iso},
        core,
    ]
    return insert_with_fallback(sb, "scheduler_jobs", payloads, JOB_INSERT_OPTIONAL)


def update_scheduler_job(
    sb,
    job_id: str,
    status: str,
    response_status: Optional[int] = None,
    response_payload: Optional[str] = None,
    error_message: Optional[str] = None,
    run_at: Optional[str] = None,
    retry_count: Optional[int] = None,
) -> None:
    full = {
        "status": status,
        "response_status": response_status,
        "response_payload": response_payload,
        "error_message": error_message,
        "run_at": run_at,
        "retry_count": retry_count,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    def without(*keys: str) -> Dict[str, Any]:
        return {k: v for k, v in full.items() if k not in keys}

    payloads = [
        full,
        without("retry_count"),
        without("response_payload"),
        without("response_status", "response_payload"),
        without("response_status", "response_payload", "retry_count"),
        without("response_status", "response_payload", "retry_count", "run_at"),
        {"status": status},
    ]
    update_with_fallback(sb, "scheduler_jobs", payloads, JOB_UPDATE_OPTIONAL, {"id": job_id})


def _create_skipped_job(sb, subscription, store_id, key, reason, webhook_config_id=None) -> None:
    try:
        insert_scheduler_job(
            sb,
            subscription,
            idempotency_key=key,
            run_at=datetime.now(timezone.utc).isoformat(),
            status="skipped",
            store_id=store_id,
            webhook_config_id=webhook_config_id,
            request_payload={"client_id": store_id},
            error_message=reason,
        )
    except APIError as e:
        if not is_unique_violation(e):
            raise


# -------------------------
# Tick
# -------------------------

def resolve_store_webhooks(
    store_ids: List[str],
    stores: List[Dict[str, Any]],
    mappings: Dict[str, List[str]],
    configs_by_id: Dict[str, Dict[str, Any]],
) -> Dict[str, Optional[str]]:
    """
    Webhook per store: explicit binding, then the newest mapping log, then
    the only active automation webhook when exactly one exists.
    """
    active_ids = [cid for cid, cfg in configs_by_id.items() if is_active_automation_webhook(cfg)]
    singleton = active_ids[0] if len(active_ids) == 1 else None
    stores_by_id = {row["id"]: row for row in stores}

    resolved: Dict[str, Optional[str]] = {}
    for store_id in store_ids:
        chosen = None
        explicit = (stores_by_id.get(store_id) or {}).get("active_webhook_config_id")
        if explicit and is_active_automation_webhook(configs_by_id.get(explicit)):
            chosen = explicit
        if not chosen:
            for candidate in mappings.get(store_id, []):
                if is_active_automation_webhook(configs_by_id.get(candidate)):
                    chosen = candidate
                    break
        resolved[store_id] = chosen or singleton
    return resolved


def run_scheduler_tick(now: Optional[datetime] = None) -> TickSummary:
    sb = require_supabase()
    now = now or datetime.now(timezone.utc)
    now_ms = now.timestamp() * 1000

    subscriptions = load_active_subscriptions(sb, current_only=False)
    summary = TickSummary(total=len(subscriptions))

    store_ids = sorted({sid for sid in (resolve_store_id_from_subscription(s) for s in subscriptions) if sid})
    stores = load_stores(store_ids, sb)
    jobs = load_scheduler_jobs([s["id"] for s in subscriptions], sb)
    mappings = load_store_webhook_mappings(store_ids, sb)
    configs_by_id = {cfg["id"]: cfg for cfg in load_webhook_configs(sb)}
    webhook_by_store = resolve_store_webhooks(store_ids, stores, mappings, configs_by_id)

    jobs_by_sub: Dict[str, List[Dict[str, Any]]] = {}
    for job in jobs:
        if job.get("subscription_id"):
            jobs_by_sub.setdefault(job["subscription_id"], []).append(job)
    for sub_jobs in jobs_by_sub.values():
        sub_jobs.sort(key=job_timestamp_ms, reverse=True)

    for subscription in subscriptions:
        try:
            _tick_subscription(sb, subscription, now, now_ms, jobs_by_sub, webhook_by_store, configs_by_id, summary)
        except Exception:
            log.exception("scheduler tick failed for subscription %s", subscription.get("id"))
            summary.fail("internal_error")

    log.info("scheduler tick: %s", summary.to_dict())
    return summary


def _tick_subscription(sb, subscription, now, now_ms, jobs_by_sub, webhook_by_store, configs_by_id, summary) -> None:
    store_id = resolve_store_id_from_subscription(subscription)
    if not is_subscription_active(subscription, now) or not store_id:
        summary.skip("subscription_inactive_or_expired")
        return

    plan = subscription.get("plan") or "standard"
    interval_ms = get_plan_window_hours(plan) * 3600 * 1000
    sub_jobs = jobs_by_sub.get(subscription["id"], [])

    anchor_ms = _ms(most_recent_cadence_success(sub_jobs, store_id))
    latest_slot_ms = _ms(latest_scheduled_slot_due(sub_jobs, store_id))
    if anchor_ms is not None:
        slot_ms = anchor_ms + interval_ms
    elif latest_slot_ms is not None:
        slot_ms = latest_slot_ms
    else:
        slot_ms = now_ms

    def slot_key(ms: float) -> str:
        slot_iso = to_iso_z(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))
        return build_scheduled_idempotency_key(subscription["id"], store_id, plan, slot_iso)

    key = slot_key(slot_ms)
    slot_job = find_slot_job(sub_jobs, store_id, key)
    # Exhausted slots are abandoned for the next window.
    while (
        slot_job
        and (slot_job.get("status") or "").lower() == "failed"
        and (slot_job.get("retry_count") or 0) >= MAX_RETRY_ATTEMPTS
    ):
        slot_ms += interval_ms
        key = slot_key(slot_ms)
        slot_job = find_slot_job(sub_jobs, store_id, key)

    if now_ms < slot_ms:
        summary.skip("not_due_yet")
        return

    webhook_id = webhook_by_store.get(store_id)
    if not webhook_id:
        _create_skipped_job(sb, subscription, store_id, key, "no_active_webhook_config")
        summary.skip("no_active_webhook_config")
        return

    config = configs_by_id.get(webhook_id)
    if not config or not config.get("enabled") or config.get("scope") == "generic":
        _create_skipped_job(sb, subscription, store_id, key, "inactive_or_invalid_webhook_config", webhook_id)
        summary.skip("inactive_or_invalid_webhook_config")
        return

    existing = (slot_job or {}).get("status", "") or ""
    existing = existing.lower()
    if slot_job and existing in ("processing", "success"):
        summary.skip("not_due_yet")
        return

    now_iso = now.isoformat()
    retry_count = (slot_job or {}).get("retry_count") or 0

    if slot_job and existing == "failed":
        next_retry_ms = job_timestamp_ms(slot_job) + retry_delay_minutes(retry_count) * 60 * 1000
        if now_ms < next_retry_ms:
            summary.skip("retry_backoff")
            return
        update_scheduler_job(sb, slot_job["id"], "processing", run_at=now_iso)
        job_id = slot_job["id"]
    elif slot_job and existing == "skipped":
        update_scheduler_job(sb, slot_job["id"], "processing", run_at=now_iso)
        job_id = slot_job["id"]
    else:
        try:
            created = insert_scheduler_job(
                sb,
                subscription,
                idempotency_key=key,
                run_at=now_iso,
                status="processing",
                store_id=store_id,
                webhook_config_id=webhook_id,
                request_payload={"client_id": store_id},
            )
        except APIError as e:
            if is_unique_violation(e):
                summary.skip("not_due_yet")
                return
            raise
        job_id = (created or {}).get("id")
        retry_count = 0

    method = "GET" if config.get("method") == "GET" else "POST"
    headers = config.get("headers") or {}
    request_body = {
        "client_id": store_id,
        "trigger_type": "scheduled",
        "subscription_id": subscription["id"],
        "webhook_config_id": webhook_id,
        "idempotency_key": key,
        "slot_due_at": to_iso_z(datetime.fromtimestamp(slot_ms / 1000, tz=timezone.utc)),
        "attempt": retry_count + 1,
        "triggered_at": now_iso,
    }
    created_by = subscription.get("user_id") if is_uuid(subscription.get("user_id")) else None
    started = time.monotonic()

    result = dispatch_n8n_trigger(
        url=config["target_url"],
        payload={"client_id": store_id},
        idempotency_key=key,
        method=method,
        headers=headers,
        triggered_at=now_iso,
    )

    if job_id:
        update_scheduler_job(
            sb,
            job_id,
            "success" if result.ok else "failed",
            response_status=result.status,
            response_payload=result.body,
            error_message=None if result.ok else result.body,
            run_at=now_iso,
            retry_count=retry_count if result.ok else retry_count + 1,
        )

    insert_webhook_log(
        request_url=config["target_url"],
        request_method=method,
        request_headers=headers,
        request_body=request_body,
        response_status=result.status or None,
        response_body=result.body,
        duration_ms=int((time.monotonic() - started) * 1000),
        created_by=created_by,
        sb=sb,
    )

    if result.ok:
        summary.triggered += 1
    else:
        summary.fail("dispatch_failed")

