from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe
from postgrest.exceptions import APIError

from apps.listflow.db import is_missing_column_error, is_uuid, require_supabase, rows_of
from apps.listflow.services.scheduler.idempotency import parse_iso
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.subscriptions")

ACTIVE_STATUSES = ("active", "trialing")

_SELECT_WITH_STORE = (
    "id,user_id,store_id,shop_id,plan,status,current_period_end,"
    "stripe_subscription_id,stripe_customer_id,updated_at,created_at"
)
_SELECT_WITHOUT_STORE = (
    "id,user_id,shop_id,plan,status,current_period_end,"
    "stripe_subscription_id,stripe_customer_id,updated_at,created_at"
)


def _to_datetime(value: Any) -> Optional[datetime]:
    return parse_iso(value) if isinstance(value, str) else None


def is_subscription_active(row: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    status = (row.get("status") or "").lower()
    if status not in ACTIVE_STATUSES:
        return False
    period_end = _to_datetime(row.get("current_period_end"))
    if period_end is None:
        return True
    return period_end > (now or datetime.now(timezone.utc))


def resolve_store_id_from_subscription(row: Dict[str, Any]) -> Optional[str]:
    if row.get("store_id"):
        return row["store_id"]
    shop_id = row.get("shop_id")
    return shop_id if is_uuid(shop_id) else None


def _with_legacy_store_id(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{**row, "store_id": row.get("shop_id") if is_uuid(row.get("shop_id")) else None} for row in rows]


def load_user_subscriptions(user_id: str, sb=None) -> List[Dict[str, Any]]:
    """
    All subscription rows of a user, newest first. Older schemas only carry
    `shop_id`; a uuid there is treated as the store id.
    """
    sb = sb or require_supabase()
    try:
        res = (
            sb.table("subscriptions")
            .select(_SELECT_WITH_STORE)
            .eq("user_id", user_id)
            .order("updated_at", desc=True)
            .execute()
        )
        return rows_of(res)
    except APIError as e:
        if not is_missing_column_error(e, "store_id"):
            raise

    res = (
        sb.table("subscriptions")
        .select(_SELECT_WITHOUT_STORE)
        .eq("user_id", user_id)
        .order("updated_at", desc=True)
        .execute()
    )
    return _with_legacy_store_id(rows_of(res))


def has_active_subscription(user_id: str, sb=None) -> bool:
    return any(is_subscription_active(row) for row in load_user_subscriptions(user_id, sb))


def load_active_subscriptions(sb=None, current_only: bool = True, limit: int = 1000) -> List[Dict[str, Any]]:
    """
    Active/trialing subscriptions with the same store_id fallback. With
    `current_only`, rows whose period already ended are dropped.
    """
    sb = sb or require_supabase()
    try:
        res = (
            sb.table("subscriptions")
            .select("id,user_id,store_id,shop_id,plan,status,current_period_end,created_at,updated_at")
            .in_("status", list(ACTIVE_STATUSES))
            .limit(limit)
            .execute()
        )
        rows = rows_of(res)
    except APIError as e:
        if not is_missing_column_error(e, "store_id"):
            raise
        res = (
            sb.table("subscriptions")
            .select("id,user_id,shop_id,plan,status,current_period_end,created_at,updated_at")
            .in_("status", list(ACTIVE_STATUSES))
            .limit(limit)
            .execute()
        )
        rows = _with_legacy_store_id(rows_of(res))
    if not current_only:
        return rows
    return [row for row in rows if is_subscription_active(row)]


# -------------------------
# Stripe
# -------------------------

def stripe_client_key(mode: Optional[str] = None) -> str:
    key = settings.stripe_secret_key(mode)
    if not key:
        raise RuntimeError("Stripe secret key is not configured")
    return key


def cancel_stripe_subscriptions_now(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Cancels each row's Stripe subscription immediately.
    Returns {"canceled_ids", "failed", "missing_stripe_ids"}.
    """
    mode = settings.STRIPE_MODE
    canceled_ids: List[str] = []
    failed: List[Dict[str, str]] = []
    missing_stripe_ids: List[str] = []

    for row in rows:
        stripe_id = row.get("stripe_subscription_id")
        if not stripe_id:
            missing_stripe_ids.append(row["id"])
            continue
        try:
            stripe.Subscription.cancel(stripe_id, api_key=stripe_client_key(mode))
            canceled_ids.append(row["id"])
        except stripe.StripeError as e:
            raw = str(getattr(e, "user_message", None) or e) or "Stripe cancellation failed"
            normalized = raw.lower()
            if "no such subscription" in normalized or "no such customer" in normalized:
                message = f"Subscription/customer could not be found in active Stripe mode ({mode})."
            else:
                message = raw
            log.warning("stripe cancel failed for %s: %s", stripe_id, raw)
            failed.append({"id": row["id"], "stripeSubscriptionId": stripe_id, "message": message})

    return {
        "canceled_ids": canceled_ids,
        "failed": failed,
        "missing_stripe_ids": missing_stripe_ids,
    }


def mark_subscription_canceled(row: Dict[str, Any], user_id: str, sb=None) -> None:
    """Marks the subscription canceled, and its store too when one is known."""
    sb = sb or require_supabase()
    now_iso = datetime.now(timezone.utc).isoformat()

    sb.table("subscriptions").update(
        {"status": "canceled", "current_period_end": now_iso, "updated_at": now_iso}
    ).eq("id", row["id"]).eq("user_id", user_id).execute()

    store_id = resolve_store_id_from_subscription(row)
    if not store_id:
        return
    try:
        sb.table("stores").update({"status": "canceled", "updated_at": now_iso}).eq("id", store_id).eq(
            "user_id", user_id
        ).execute()
    except APIError as e:
        if not is_missing_column_error(e, "updated_at"):
            raise
        sb.table("stores").update({"status": "canceled"}).eq("id", store_id).eq("user_id", user_id).execute()


def subscription_month_index(created_at: Any, now: Optional[datetime] = None) -> int:
    """1-based billing month the subscription is in."""
    start = _to_datetime(created_at)
    if start is None:
        return 1
    now = now or datetime.now(timezone.utc)
    months = (now.year - start.year) * 12 + (now.month - start.month)
    if now.day < start.day:
        months -= 1
    return max(months + 1, 1)
