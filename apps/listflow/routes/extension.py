# apps/listflow/routes/extension.py
"""
Browser-extension worker API (Bearer token only).
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from apps.listflow.db import require_supabase, select_with_fallback, utcnow_iso
from apps.listflow.services.auth import require_extension_user
from apps.listflow.services.etsy_page_sync import derive_selector_hints, parse_page_sync_input, payload_preview
from apps.listflow.services.listing_queue import (
    ListingReport,
    apply_listing_job_report,
    claim_next_listing_for_user,
)
from apps.listflow.services.subscriptions import is_subscription_active, load_user_subscriptions
from apps.listflow.utils.envelope import fail, no_store

log = logging.getLogger("listflow.extension")

router = APIRouter(prefix="/api/extension", tags=["extension"])

LOG_LEVELS = ("info", "warn", "error")

REPORT_FAILURE_STATUS = {
    "identifier_missing": 400,
    "listing_not_found": 404,
    "not_owner": 403,
}


# ===== Pydantic models =====
class ClaimBody(BaseModel):
    client_id: Optional[str] = None
    store_id: Optional[str] = None
    force_recover: bool = False


class EtsyRefs(BaseModel):
    listing_id: Optional[Any] = None
    listing_url: Optional[str] = None


class ReportBody(BaseModel):
    job_id: Optional[Any] = None
    type: Optional[Any] = None
    status: Optional[Any] = None
    step: Optional[Any] = None
    listing_id: Optional[Any] = None
    listing_key: Optional[Any] = None
    error: Optional[Any] = None
    etsy_refs: Optional[EtsyRefs] = None


class LogBody(BaseModel):
    store_id: Optional[Any] = None
    store_name: Optional[Any] = None
    level: Optional[Any] = None
    event: Optional[Any] = None
    message: Optional[Any] = None
    metadata: Optional[Any] = None


def _trimmed(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    return value.strip() if isinstance(value, str) else ""


def _clip(value: Any, limit: int) -> Optional[str]:
    text = value.strip() if isinstance(value, str) else ""
    return text[:limit] if text else None


def _error_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("message") or value.get("error")
    return _trimmed(value) or None


def resolve_report_status(status: Any, step: Any) -> str:
    raw = _trimmed(status).lower()
    if raw in ("done", "success", "completed"):
        return "completed"
    if raw in ("error", "failed"):
        return "failed"
    step_text = _trimmed(step).lower()
    if "done" in step_text or "success" in step_text or "completed" in step_text:
        return "completed"
    if "error" in step_text or "failed" in step_text:
        return "failed"
    return "processing"


# ===== Endpoints =====

@router.post("/claim-next-listing")
def claim_next_listing(body: Optional[ClaimBody] = None, user: Dict[str, Any] = Depends(require_extension_user)):
    body = body or ClaimBody()
    subscriptions = load_user_subscriptions(user["id"])
    if not any(is_subscription_active(row) for row in subscriptions):
        return fail("Subscription inactive", 403, "SUBSCRIPTION_INACTIVE")

    preferred = _trimmed(body.client_id) or _trimmed(body.store_id) or None
    claimed = claim_next_listing_for_user(user["id"], preferred_client_id=preferred, force_recover=body.force_recover)
    if not claimed:
        return no_store({"ok": True, "job": None})

    payload = claimed.listing_payload
    return no_store(
        {
            "ok": True,
            "job": {
                "type": "LISTING_CREATE",
                "listing_id": payload.get("listing_id"),
                "listing_key": payload.get("listing_key"),
                "client_id": payload.get("client_id"),
                "listing_payload": payload,
            },
        }
    )


@router.post("/report-job")
def report_job(body: Optional[ReportBody] = None, user: Dict[str, Any] = Depends(require_extension_user)):
    body = body or ReportBody()
    job_type = _trimmed(body.type).upper()
    if job_type and job_type != "LISTING_CREATE":
        return no_store({"ok": True, "ignored": True})

    refs = body.etsy_refs or EtsyRefs()
    etsy_listing_id = _trimmed(refs.listing_id) or None
    report = ListingReport(
        user_id=user["id"],
        status=resolve_report_status(body.status, body.step),
        listing_id=_trimmed(body.listing_id) or etsy_listing_id,
        listing_key=_trimmed(body.listing_key) or None,
        error=_error_text(body.error),
        etsy_listing_id=etsy_listing_id,
        etsy_listing_url=_trimmed(refs.listing_url) or None,
    )
    outcome = apply_listing_job_report(report)
    if not outcome.ok:
        return fail(outcome.reason, REPORT_FAILURE_STATUS.get(outcome.reason, 400), outcome.reason)

    return no_store({"ok": True, "result": {"ok": True, "status": outcome.status}})


@router.post("/logs")
def write_log(body: Optional[LogBody] = None, user: Dict[str, Any] = Depends(require_extension_user)):
    body = body or LogBody()
    event = _clip(body.event, 200)
    if not event:
        return fail("event is required", 400)

    level = body.level if body.level in LOG_LEVELS else "info"
    sb = require_supabase()
    sb.table("extension_logs").insert(
        {
            "user_id": user["id"],
            "store_id": _clip(body.store_id, 200),
            "store_name": _clip(body.store_name, 200),
            "level": level,
            "event": event,
            "message": _clip(body.message, 2000),
            "metadata": body.metadata if isinstance(body.metadata, dict) else None,
        }
    ).execute()
    return {"ok": True}


@router.get("/me")
def me(user: Dict[str, Any] = Depends(require_extension_user)):
    sb = require_supabase()
    stores, _ = select_with_fallback(
        lambda select: sb.table("stores").select(select).eq("user_id", user["id"]).execute(),
        ["id,store_name,status", "id,name,status", "id"],
    )
    subscriptions = load_user_subscriptions(user["id"], sb)
    return no_store(
        {
            "ok": True,
            "state": {
                "user": {"id": user["id"], "email": user.get("email")},
                "stores": stores,
                "hasActiveSubscription": any(is_subscription_active(row) for row in subscriptions),
            },
        }
    )


# ===== Etsy page sync =====

async def _json_or_empty(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return {}


@router.post("/etsy/page-sync")
async def etsy_page_sync(request: Request, user: Dict[str, Any] = Depends(require_extension_user)):
    data = parse_page_sync_input(await _json_or_empty(request))
    result = derive_selector_hints(data)
    return no_store(
        {
            "ok": True,
            "synced_at": data.synced_at,
            "user_id": user["id"],
            "ui_version": result["ui_version"],
            "confidence": result["confidence"],
            "selector_hints": result["hints"],
            "debug": result["debug"],
            "accepted_payload_preview": payload_preview(data),
        }
    )


@router.post("/etsy/orders-snapshot")
async def etsy_orders_snapshot(request: Request, user: Dict[str, Any] = Depends(require_extension_user)):
    payload = await _json_or_empty(request)
    return no_store(
        {
            "ok": True,
            "accepted": True,
            "user_id": user["id"],
            "received_at": utcnow_iso(),
            "payload_type": "json" if isinstance(payload, (dict, list)) else "unknown",
        }
    )
