# apps/listflow/routes/stripe_webhook.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from apps.listflow.db import require_supabase
from apps.listflow.services.cron_job_org import sync_scheduler_cron_job_lifecycle
from apps.listflow.services.stripe_sync import (
    StripeSignatureError,
    construct_event,
    handle_stripe_event,
    persist_stripe_event,
)

log = logging.getLogger("listflow.stripe")

router = APIRouter(prefix="/api/stripe", tags=["stripe"])


def process_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Records the event once, applies it, then re-syncs the cron job when needed."""
    sb = require_supabase()
    if not persist_stripe_event(event, sb):
        log.info("stripe event %s already processed", event.get("id"))
        return {"received": True, "duplicated": True}

    cron_sync_error: Optional[str] = None
    if handle_stripe_event(event, sb):
        try:
            result = sync_scheduler_cron_job_lifecycle()
            if not result.get("ok") and result.get("status") == "error":
                cron_sync_error = result.get("details") or result.get("message")
        except Exception as e:
            log.exception("cron lifecycle sync after stripe event %s failed", event.get("id"))
            cron_sync_error = str(e) or "Cron lifecycle sync failed"

    return {"received": True, "cronSyncError": cron_sync_error}


@router.post("/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    try:
        event = construct_event(payload, request.headers.get("stripe-signature"))
    except StripeSignatureError as e:
        log.warning("stripe webhook rejected: %s", e)
        return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        return await run_in_threadpool(process_event, event)
    except Exception as e:
        log.exception("stripe webhook %s (%s) failed", event.get("id"), event.get("type"))
        return JSONResponse(status_code=500, content={"error": str(e) or "Webhook processing failed"})
