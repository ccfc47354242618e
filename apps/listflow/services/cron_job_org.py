# apps/listflow/services/cron_job_org.py

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from postgrest.exceptions import APIError

from apps.listflow.db import require_supabase, select_with_fallback
from apps.listflow.services.n8n import normalize_headers
from apps.listflow.services.scheduler.engine import load_stores, resolve_store_webhooks
from apps.listflow.services.scheduler.idempotency import get_plan_window_hours, parse_iso, to_iso_z
from apps.listflow.services.subscriptions import load_active_subscriptions, resolve_store_id_from_subscription
from apps.listflow.services.webhooks.configs import is_active_automation_webhook, load_webhook_configs
from apps.listflow.services.webhooks.logs import load_store_mapping_times, load_store_webhook_mappings
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.cron_job_org")

SCHEDULER_JOB_TITLE = "Listflow Scheduler Tick"
AUTOMATION_TITLE_PREFIX = "Listflow Automation::"
GET_REQUEST_METHOD = 0
POST_REQUEST_METHOD = 1
LIFECYCLE_SYNC_COOLDOWN_SECONDS = 5 * 60
DIRECT_JOBS_CACHE_TTL_SECONDS = 90
MAX_MUTATIONS_PER_SYNC = 25

_sync_lock = threading.Lock()
_last_sync_at = 0.0
_direct_jobs_cache: Dict[str, Any] = {}


class CronJobOrgError(RuntimeError):
    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status

    @property
    def rate_limited(self) -> bool:
        return self.status == 429 or "rate limit" in str(self).lower()


class CronJobOrgClient:
    """
    cron-job.org REST client.

    - Bearer API key
    - 429 retried after 1s, 2s, 4s
    - Non-2xx raises CronJobOrgError
    """

    TIMEOUT_SECONDS = 20
    RETRY_DELAYS_SECONDS = (1, 2, 4)

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        if not api_key:
            raise ValueError("CronJobOrgClient requires an api_key")
        self.base_url = (base_url or settings.CRON_JOB_ORG_BASE_URL).rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        text = response.text or ""
        if not text:
            return f"HTTP {response.status_code}"
        try:
            data = response.json()
        except ValueError:
            return text
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or f"HTTP {response.status_code}")
        return text

    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempts = len(self.RETRY_DELAYS_SECONDS) + 1
        for attempt in range(attempts):
            try:
                response = requests.request(
                    method=method,
                    url=f"{self.base_url}{path}",
                    headers=self.headers,
                    json=json,
                    timeout=self.TIMEOUT_SECONDS,
                )
            except requests.RequestException as e:
                raise CronJobOrgError(f"cron-job.org unreachable: {e}") from e
            if response.ok:
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

            message = self._error_message(response)
            if response.status_code == 429 and attempt < attempts - 1:
                time.sleep(self.RETRY_DELAYS_SECONDS[attempt])
                continue
            raise CronJobOrgError(f"HTTP {response.status_code}: {message}", response.status_code)

        raise CronJobOrgError("cron-job.org request failed after retries", 429)

    # ---------------------------------------------------------
    # Jobs
    # ---------------------------------------------------------
    def list_jobs(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/jobs").get("jobs") or []

    def create_job(self, job: Dict[str, Any]) -> Optional[int]:
        return self._request("PUT", "/jobs", json={"job": job}).get("jobId")

    def update_job(self, job_id: int, job: Dict[str, Any]) -> None:
        self._request("PATCH", f"/jobs/{job_id}", json={"job": job})

    def delete_job(self, job_id: int) -> None:
        self._request("DELETE", f"/jobs/{job_id}")


# -------------------------
# Scheduler tick job
# -------------------------

def _api_key() -> Optional[str]:
    return settings.CRON_JOB_ORG_API_KEY or settings.CRON_SECRET


def _client() -> Optional[CronJobOrgClient]:
    key = _api_key()
    return CronJobOrgClient(key) if key else None


def is_direct_automation_mode() -> bool:
    return settings.AUTOMATION_DISPATCH_MODE == "direct"


def scheduler_tick_url() -> str:
    base = settings.CRON_SCHEDULER_BASE_URL or settings.APP_URL or ""
    return f"{base.rstrip('/')}/api/scheduler/tick"


def scheduler_schedule() -> Dict[str, Any]:
    if is_direct_automation_mode():
        # Daily heartbeat; real dispatch happens outside the tick.
        hours, minutes = [0], [0]
    else:
        hours, minutes = [-1], [-1]
    return {
        "timezone": "UTC",
        "expiresAt": 0,
        "hours": hours,
        "mdays": [-1],
        "minutes": minutes,
        "months": [-1],
        "wdays": [-1],
    }


def scheduler_job_payload() -> Dict[str, Any]:
    return {
        "enabled": True,
        "title": SCHEDULER_JOB_TITLE,
        "saveResponses": True,
        "url": scheduler_tick_url(),
        "redirectSuccess": True,
        "requestMethod": POST_REQUEST_METHOD,
        "schedule": scheduler_schedule(),
        "extendedData": {
            "headers": {
                "Authorization": f"Bearer {settings.CRON_SECRET or ''}",
                "Content-Type": "application/json",
                "x-listflow-tick-source": "cron-job.org",
            }
        },
    }


def _configured_job_id() -> Optional[int]:
    raw = (settings.CRON_JOB_ORG_JOB_ID or "").strip()
    return int(raw) if raw.isdigit() else None


def find_scheduler_job_id(jobs: List[Dict[str, Any]]) -> Optional[int]:
    configured = _configured_job_id()
    if configured is not None:
        for job in jobs:
            if job.get("jobId") == configured:
                return configured

    target = scheduler_tick_url()
    for job in jobs:
        if (job.get("title") or "").strip() == SCHEDULER_JOB_TITLE and (job.get("url") or "").strip() == target:
            return job.get("jobId")
    for job in jobs:
        if (job.get("url") or "").strip() == target:
            return job.get("jobId")
    return None


def _skipped(message: str) -> Dict[str, Any]:
    return {"ok": False, "status": "skipped", "message": message}


def _failed(message: str, e: CronJobOrgError) -> Dict[str, Any]:
    if e.rate_limited:
        return {"ok": False, "status": "skipped", "message": f"{message} skipped: cron-job.org rate limit.", "details": str(e)}
    return {"ok": False, "status": "error", "message": f"{message} failed.", "details": str(e)}


def list_jobs() -> List[Dict[str, Any]]:
    client = _client()
    if client is None:
        raise CronJobOrgError("CRON_JOB_ORG_API_KEY is not configured.")
    return client.list_jobs()


def ensure_scheduler_cron_job() -> Dict[str, Any]:
    client = _client()
    if client is None:
        return _skipped("Cron API key not found; cron sync skipped.")

    payload = scheduler_job_payload()
    try:
        existing = find_scheduler_job_id(client.list_jobs())
        if existing is not None:
            client.update_job(existing, payload)
            log.info("cron-job.org scheduler job updated jobId=%s", existing)
            return {
                "ok": True,
                "status": "updated",
                "jobId": existing,
                "message": f"Cron job updated (jobId={existing}, url={payload['url']}).",
            }

        job_id = client.create_job(payload)
        if not job_id:
            return {"ok": False, "status": "error", "message": "Cron job created but no jobId was returned."}
        log.info("cron-job.org scheduler job created jobId=%s", job_id)
        return {
            "ok": True,
            "status": "created",
            "jobId": job_id,
            "message": f"Cron job created (jobId={job_id}, url={payload['url']}).",
        }
    except CronJobOrgError as e:
        log.warning("cron-job.org ensure failed: %s", e)
        return _failed("cron-job.org sync", e)


def delete_cron_job(job_id: Optional[int] = None) -> Dict[str, Any]:
    """Deletes `job_id`, or the scheduler tick job when none is given."""
    client = _client()
    if client is None:
        return _skipped("Cron API key not found; cron job delete skipped.")

    try:
        target = job_id if job_id is not None else find_scheduler_job_id(client.list_jobs())
        if target is None:
            return {"ok": True, "status": "noop", "message": "No scheduler cron job to delete."}
        client.delete_job(target)
        log.info("cron-job.org job deleted jobId=%s", target)
        return {"ok": True, "status": "deleted", "jobId": target, "message": f"Cron job deleted (jobId={target})."}
    except CronJobOrgError as e:
        log.warning("cron-job.org delete failed: %s", e)
        return _failed("cron-job.org delete", e)


def has_bound_automation_store(sb=None) -> bool:
    """True while at least one live subscription has a store with an active automation webhook."""
    sb = sb or require_supabase()
    subscriptions = load_active_subscriptions(sb)
    store_ids = sorted({sid for sid in map(resolve_store_id_from_subscription, subscriptions) if sid})
    if not store_ids:
        return False

    configs_by_id = {cfg["id"]: cfg for cfg in load_webhook_configs(sb)}
    resolved = resolve_store_webhooks(
        store_ids, load_stores(store_ids, sb), load_store_webhook_mappings(store_ids, sb), configs_by_id
    )
    return any(resolved.values())


# -------------------------
# Direct automation jobs
# -------------------------

@dataclass
class DesiredDirectJob:
    title: str
    payload: Dict[str, Any]
    subscription_id: str
    store_id: str
    webhook_config_id: str
    plan: str
    anchor_iso: str


def automation_title(subscription_id: str, store_id: str, webhook_config_id: str, plan: str) -> str:
    return f"{AUTOMATION_TITLE_PREFIX}{subscription_id}::{store_id}::{webhook_config_id}::{plan.lower()}"


def is_automation_title(title: Optional[str]) -> bool:
    return bool(title) and title.startswith(AUTOMATION_TITLE_PREFIX)


def parse_automation_title(title: Optional[str]) -> Dict[str, Optional[str]]:
    parts = title[len(AUTOMATION_TITLE_PREFIX):].split("::") if is_automation_title(title) else []
    parts += [None] * (4 - len(parts))
    return {
        "subscriptionId": parts[0],
        "storeId": parts[1],
        "webhookConfigId": parts[2],
        "plan": parts[3],
    }


def _anchor(anchor_iso: Optional[str], now: datetime) -> datetime:
    return parse_iso(anchor_iso) or now


def automation_schedule(plan: Optional[str], anchor_iso: Optional[str], now: datetime) -> Dict[str, Any]:
    """Fires every plan window, aligned to the anchor's UTC hour and minute."""
    interval = get_plan_window_hours(plan or "standard")
    anchor = _anchor(anchor_iso, now).astimezone(timezone.utc)
    hours = sorted({(anchor.hour + offset) % 24 for offset in range(0, 24, interval)})
    return {
        "timezone": "UTC",
        "expiresAt": 0,
        "hours": hours or [0],
        "mdays": [-1],
        "minutes": [anchor.minute],
        "months": [-1],
        "wdays": [-1],
    }


def next_execution_unix(plan: Optional[str], anchor_iso: Optional[str], now: datetime) -> int:
    interval = timedelta(hours=max(1, get_plan_window_hours(plan)))
    anchor = _anchor(anchor_iso, now).replace(second=0, microsecond=0)
    if anchor > now:
        return int(anchor.timestamp())
    slots = (now - anchor) // interval + 1
    return int((anchor + slots * interval).timestamp())


def _numbers(values: Any) -> List[int]:
    out = set()
    for value in values or []:
        try:
            out.add(int(value))
        except (TypeError, ValueError):
            continue
    return sorted(out)


def same_schedule(current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
    if not current:
        return False
    if (current.get("timezone") or "UTC") != (desired.get("timezone") or "UTC"):
        return False
    if (current.get("expiresAt") or 0) != (desired.get("expiresAt") or 0):
        return False
    return all(
        _numbers(current.get(key)) == _numbers(desired.get(key))
        for key in ("hours", "minutes", "mdays", "months", "wdays")
    )


def needs_update(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    if (existing.get("url") or "").strip() != desired["url"].strip():
        return True
    if existing.get("requestMethod", POST_REQUEST_METHOD) != desired["requestMethod"]:
        return True
    if existing.get("enabled", True) != desired["enabled"]:
        return True
    return not same_schedule(existing.get("schedule"), desired["schedule"])


def _load_store_bindings(store_ids: List[str], sb) -> List[Dict[str, Any]]:
    if not store_ids:
        return []
    rows, _ = select_with_fallback(
        lambda select: sb.table("stores").select(select).in_("id", store_ids).execute(),
        [
            "id,active_webhook_config_id,automation_updated_at",
            "id,active_webhook_config_id",
            "id,automation_updated_at",
            "id",
        ],
    )
    return rows


def _direct_job_payload(title: str, store_id: str, webhook: Dict[str, Any], schedule: Dict[str, Any]) -> Dict[str, Any]:
    is_get = (webhook.get("method") or "POST").upper() == "GET"
    headers = {} if is_get else {"Content-Type": "application/json"}
    headers.update(normalize_headers(webhook.get("headers")))
    extended: Dict[str, Any] = {"headers": headers}
    if not is_get:
        extended["body"] = json.dumps({"client_id": store_id})
    return {
        "enabled": True,
        "title": title,
        "saveResponses": True,
        "url": webhook["target_url"],
        "redirectSuccess": True,
        "requestMethod": GET_REQUEST_METHOD if is_get else POST_REQUEST_METHOD,
        "schedule": schedule,
        "extendedData": extended,
    }


def build_desired_direct_jobs(sb=None, now: Optional[datetime] = None) -> List[DesiredDirectJob]:
    """
    One cron-job.org job per live subscription whose store resolves to an
    active automation webhook. The job calls the webhook directly on the
    plan cadence.
    """
    sb = sb or require_supabase()
    now = now or datetime.now(timezone.utc)

    subscriptions = load_active_subscriptions(sb)
    store_ids = sorted({sid for sid in map(resolve_store_id_from_subscription, subscriptions) if sid})
    stores = _load_store_bindings(store_ids, sb)
    stores_by_id = {row["id"]: row for row in stores}
    configs_by_id = {
        cfg["id"]: cfg
        for cfg in load_webhook_configs(sb)
        if is_active_automation_webhook(cfg) and (cfg.get("target_url") or "").strip()
    }
    resolved = resolve_store_webhooks(
        store_ids, stores, load_store_webhook_mappings(store_ids, sb), configs_by_id
    )
    mapped_at = load_store_mapping_times(store_ids, sb)

    desired: List[DesiredDirectJob] = []
    for subscription in subscriptions:
        store_id = resolve_store_id_from_subscription(subscription)
        if not store_id or store_id not in stores_by_id:
            continue
        webhook_id = resolved.get(store_id)
        if not webhook_id:
            continue

        anchor_iso = (
            stores_by_id[store_id].get("automation_updated_at")
            or mapped_at.get(store_id)
            or subscription.get("created_at")
            or subscription.get("updated_at")
            or to_iso_z(now)
        )
        plan = (subscription.get("plan") or "standard").lower()
        title = automation_title(subscription["id"], store_id, webhook_id, plan)
        payload = _direct_job_payload(
            title, store_id, configs_by_id[webhook_id], automation_schedule(plan, anchor_iso, now)
        )
        desired.append(DesiredDirectJob(title, payload, subscription["id"], store_id, webhook_id, plan, anchor_iso))
    return desired


def sync_direct_automation_cron_jobs(client: Optional[CronJobOrgClient] = None, sb=None) -> Dict[str, Any]:
    """
    Reconciles cron-job.org against the desired direct jobs by title:
    creates missing ones, patches drifted ones, deletes managed jobs nobody
    wants anymore. At most MAX_MUTATIONS_PER_SYNC writes per run; the rest
    wait for the next sync.
    """
    client = client or _client()
    if client is None:
        return {"ok": False, "message": "Cron API key not found; direct cron sync skipped."}

    try:
        desired = {job.title: job.payload for job in build_desired_direct_jobs(sb)}
        managed = [job for job in client.list_jobs() if is_automation_title(job.get("title"))]
        managed_by_title = {job["title"]: job for job in managed}

        counts = {"created": 0, "updated": 0, "unchanged": 0, "deleted": 0}
        budget = MAX_MUTATIONS_PER_SYNC
        deferred = 0

        for title, payload in desired.items():
            existing = managed_by_title.get(title)
            if existing and not needs_update(existing, payload):
                counts["unchanged"] += 1
                continue
            if budget <= 0:
                deferred += 1
                continue
            if existing:
                client.update_job(existing["jobId"], payload)
                counts["updated"] += 1
            else:
                client.create_job(payload)
                counts["created"] += 1
            budget -= 1

        for job in managed:
            if job.get("title") in desired:
                continue
            if budget <= 0:
                deferred += 1
                continue
            client.delete_job(job["jobId"])
            counts["deleted"] += 1
            budget -= 1
    except CronJobOrgError as e:
        log.warning("direct automation cron sync failed: %s", e)
        return {
            "ok": False,
            "message": "Direct automation cron sync failed.",
            "details": str(e),
            "rateLimited": e.rate_limited,
        }
    except APIError as e:
        log.warning("direct automation cron sync lookup failed: %s", e.message)
        return {"ok": False, "message": "Direct automation cron sync failed.", "details": e.message}
    finally:
        invalidate_direct_jobs_cache()

    message = (
        f"Direct cron sync done (desired={len(desired)}, created={counts['created']}, "
        f"updated={counts['updated']}, unchanged={counts['unchanged']}, deleted={counts['deleted']})."
    )
    if deferred:
        message += f" {deferred} change(s) deferred to the next sync (mutation limit)."
    log.info(message)
    return {"ok": True, **counts, "deferred": deferred, "desired": len(desired), "existingManaged": len(managed), "message": message}


def _direct_job_row(job: Dict[str, Any]) -> Dict[str, Any]:
    parsed = parse_automation_title(job.get("title"))
    return {
        "jobId": job.get("jobId"),
        "enabled": job.get("enabled") is not False,
        "title": job.get("title") or "",
        "url": job.get("url") or "",
        "requestMethod": job.get("requestMethod", POST_REQUEST_METHOD),
        "lastStatus": job.get("lastStatus"),
        "lastDuration": job.get("lastDuration"),
        "lastExecution": job.get("lastExecution"),
        "nextExecution": job.get("nextExecution"),
        "schedule": job.get("schedule"),
        **parsed,
    }


def desired_direct_job_rows(sb=None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Placeholder rows computed locally, used when cron-job.org cannot be listed."""
    now = now or datetime.now(timezone.utc)
    jobs = sorted(build_desired_direct_jobs(sb, now), key=lambda job: job.title)
    return [
        {
            "jobId": -(index + 1),
            "enabled": True,
            "title": job.title,
            "url": job.payload["url"],
            "requestMethod": job.payload["requestMethod"],
            "lastStatus": 0,
            "lastDuration": None,
            "lastExecution": None,
            "nextExecution": next_execution_unix(job.plan, job.anchor_iso, now),
            "schedule": job.payload["schedule"],
            "subscriptionId": job.subscription_id,
            "storeId": job.store_id,
            "webhookConfigId": job.webhook_config_id,
            "plan": job.plan,
        }
        for index, job in enumerate(jobs)
    ]


def load_direct_automation_cron_jobs(force: bool = False) -> List[Dict[str, Any]]:
    """
    Managed direct jobs as listed by cron-job.org, soonest first, cached for
    DIRECT_JOBS_CACHE_TTL_SECONDS. On a rate limit the last listing is served,
    or locally computed rows when there is none.
    """
    client = _client()
    if client is None:
        raise CronJobOrgError("CRON_JOB_ORG_API_KEY is not configured.")

    cached = _direct_jobs_cache.get("rows")
    if not force and cached is not None and time.monotonic() < _direct_jobs_cache.get("expires_at", 0):
        return cached

    try:
        jobs = client.list_jobs()
        rows = sorted(
            (_direct_job_row(job) for job in jobs if is_automation_title(job.get("title"))),
            key=lambda row: row["nextExecution"] or 0,
        )
    except CronJobOrgError as e:
        if not e.rate_limited:
            raise
        if cached is not None:
            return cached
        log.warning("cron-job.org rate limited, serving computed direct jobs")
        rows = desired_direct_job_rows()

    _direct_jobs_cache.update(rows=rows, expires_at=time.monotonic() + DIRECT_JOBS_CACHE_TTL_SECONDS)
    return rows


def invalidate_direct_jobs_cache() -> None:
    _direct_jobs_cache.clear()


# -------------------------
# Lifecycle
# -------------------------

def _run_lifecycle_sync(client: CronJobOrgClient) -> Dict[str, Any]:
    try:
        needed = has_bound_automation_store()
    except Exception as e:
        log.exception("cron lifecycle: automation lookup failed")
        return {"ok": False, "status": "error", "message": "Cron lifecycle sync failed.", "details": str(e)}

    result = ensure_scheduler_cron_job() if needed else delete_cron_job()
    if not result.get("ok") or not is_direct_automation_mode():
        return result

    direct = sync_direct_automation_cron_jobs(client)
    if direct.get("ok"):
        return {**result, "message": f"{result['message']} {direct['message']}", "direct": direct}
    if direct.get("rateLimited"):
        return {
            "ok": False,
            "status": "skipped",
            "message": f"{result['message']} Direct cron sync skipped this round: cron-job.org rate limit.",
            "details": direct.get("details"),
        }
    return {
        "ok": False,
        "status": "error",
        "message": f"{result['message']} {direct['message']}",
        "details": direct.get("details"),
    }


def sync_scheduler_cron_job_lifecycle(force: bool = False) -> Dict[str, Any]:
    """
    Keeps the scheduler tick job present only while some store has bound
    automation, and in direct mode reconciles the per-store jobs too.
    Runs are serialized and rate limited to one per cooldown unless forced.
    """
    global _last_sync_at

    client = _client()
    if client is None:
        return _skipped("Cron API key not found; cron sync skipped.")

    if not _sync_lock.acquire(blocking=force):
        return {"ok": True, "status": "noop", "message": "Cron lifecycle sync already running."}
    try:
        if not force and _last_sync_at and time.monotonic() - _last_sync_at < LIFECYCLE_SYNC_COOLDOWN_SECONDS:
            return {"ok": True, "status": "noop", "message": "Cron lifecycle sync skipped (cooldown)."}
        try:
            result = _run_lifecycle_sync(client)
        finally:
            _last_sync_at = time.monotonic()
        log.info("cron lifecycle sync: %s", result.get("status"))
        return result
    finally:
        _sync_lock.release()


def reset_lifecycle_cooldown() -> None:
    global _last_sync_at
    _last_sync_at = 0.0
    invalidate_direct_jobs_cache()
