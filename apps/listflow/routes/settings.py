# apps/listflow/routes/settings.py
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from apps.listflow.db import require_supabase
from apps.listflow.services.auth import require_user
from apps.listflow.services.subscriptions import (
    cancel_stripe_subscriptions_now,
    is_subscription_active,
    load_user_subscriptions,
    mark_subscription_canceled,
)
from apps.listflow.utils.envelope import fail

log = logging.getLogger("listflow.settings")

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/subscription")
def list_subscriptions(user: Dict[str, Any] = Depends(require_user)):
    rows = load_user_subscriptions(user["id"])
    return {"rows": [{**row, "active": is_subscription_active(row)} for row in rows]}


@router.post("/subscription/cancel")
def cancel_subscription(user: Dict[str, Any] = Depends(require_user)):
    """
    Cancels every active subscription of the caller immediately in Stripe,
    then marks the rows (and their stores) canceled locally.
    """
    sb = require_supabase()
    active_rows = [row for row in load_user_subscriptions(user["id"], sb) if is_subscription_active(row)]
    if not active_rows:
        return {"success": True, "canceledCount": 0, "alreadyStopped": True}

    result = cancel_stripe_subscriptions_now(active_rows)
    if result["missing_stripe_ids"]:
        return fail(
            "Some subscriptions have no Stripe subscription id; they cannot be canceled automatically.",
            409,
            missingStripeIds=result["missing_stripe_ids"],
        )

    canceled = set(result["canceled_ids"])
    for row in active_rows:
        if row["id"] in canceled:
            mark_subscription_canceled(row, user["id"], sb)

    log.info("user %s canceled %d subscription(s)", user["id"], len(canceled))

    if result["failed"]:
        return fail(
            "Some subscriptions could not be canceled in Stripe.",
            502,
            success=False,
            canceledCount=len(canceled),
            failed=result["failed"],
        )

    return {"success": True, "canceledCount": len(canceled), "failed": []}
