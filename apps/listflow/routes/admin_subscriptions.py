# apps/listflow/routes/admin_subscriptions.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from apps.listflow.db import require_supabase, select_with_fallback
from apps.listflow.services.auth import require_admin
from apps.listflow.services.stripe_sync import rebind_subscription_prices, reconcile_checkout_payments
from apps.listflow.services.subscriptions import is_subscription_active, subscription_month_index
from apps.listflow.utils.envelope import fail

log = logging.getLogger("listflow.admin_subscriptions")

router = APIRouter(prefix="/api/admin", tags=["admin-subscriptions"])

SUBSCRIPTION_SELECTS = [
    "id,user_id,store_id,shop_id,plan,status,current_period_end,stripe_subscription_id,stripe_customer_id,created_at,updated_at",
    "id,user_id,shop_id,plan,status,current_period_end,stripe_subscription_id,stripe_customer_id,created_at,updated_at",
    "id,user_id,shop_id,plan,status,current_period_end,created_at",
]


# ===== Pydantic models =====
class RebindBody(BaseModel):
    dryRun: bool = False
    mode: Optional[str] = None


class ReconcileBody(BaseModel):
    mode: Optional[str] = "all"
    days: Optional[Any] = None
    maxSessions: Optional[Any] = None
    dryRun: Optional[Any] = None


# ===== Endpoints =====

@router.get("/subscriptions")
def list_subscriptions(admin: Dict[str, Any] = Depends(require_admin)):
    sb = require_supabase()
    rows, _ = select_with_fallback(
        lambda select: sb.table("subscriptions").select(select).order("created_at", desc=True).limit(1000).execute(),
        SUBSCRIPTION_SELECTS,
    )
    return {
        "rows": [
            {
                **row,
                "active": is_subscription_active(row),
                "monthIndex": subscription_month_index(row.get("created_at")),
            }
            for row in rows
        ]
    }


@router.post("/stripe/rebind-subscriptions")
def rebind_subscriptions(body: Optional[RebindBody] = None, admin: Dict[str, Any] = Depends(require_admin)):
    body = body or RebindBody()
    try:
        result = rebind_subscription_prices(dry_run=body.dryRun, mode=body.mode)
    except (RuntimeError, ValueError) as e:
        # Missing or mismatched Stripe keys.
        return fail(str(e), 500)
    log.info(
        "stripe rebind (%s, dryRun=%s): scanned=%s updated=%s",
        result["mode"],
        result["dryRun"],
        result["scanned"],
        result["updated"],
    )
    return result


@router.post("/orders/reconcile-payments")
def reconcile_payments(body: Optional[ReconcileBody] = None, admin: Dict[str, Any] = Depends(require_admin)):
    body = body or ReconcileBody()
    try:
        return reconcile_checkout_payments(
            mode=body.mode,
            days=body.days,
            max_sessions=body.maxSessions,
            dry_run=body.dryRun is True,
        )
    except ValueError as e:
        return fail(str(e), 500, "STRIPE_SESSIONS_UNAVAILABLE")
