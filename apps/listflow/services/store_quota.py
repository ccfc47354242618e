from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from apps.listflow.db import is_missing_any_column_error, require_supabase, rows_of
from apps.listflow.services.subscriptions import is_subscription_active, load_user_subscriptions

log = logging.getLogger("listflow.store_quota")

PLAN_ORDER = ("standard", "pro", "turbo")
PLAN_RANK = {"standard": 1, "pro": 2, "turbo": 3}

STORE_LIMITS_BY_PLAN = {"standard": 4, "pro": 6, "turbo": 8}
EXTRA_STORE_PRICE_CENTS_BY_PLAN = {"standard": 2000, "pro": 2000, "turbo": 1000}
PLAN_TO_MONTHLY_CENTS = {"standard": 2990, "pro": 4990, "turbo": 7990}

EXTRA_STORE_PAYMENT_PREFIX = "extra_store_credit:"

_PAYMENT_SELECTS = (
    ("id,shop_id,status,stripe_session_id", True, True, True),
    ("id,shop_id,status", True, True, False),
    ("id,shop_id", True, False, False),
    ("id", False, False, False),
)


def normalize_plan(value: Optional[str]) -> Optional[str]:
    plan = (value or "").strip().lower()
    if plan in ("standard", "starter"):
        return "standard"
    if plan in ("pro", "turbo"):
        return plan
    return None


def build_extra_store_payment_shop_id(plan: str) -> str:
    return f"{EXTRA_STORE_PAYMENT_PREFIX}{plan}"


def resolve_effective_plan(subscriptions: List[Dict[str, Any]]) -> Dict[str, Any]:
    active = [row for row in subscriptions if is_subscription_active(row)]
    if not active:
        fallback = normalize_plan(subscriptions[0].get("plan")) if subscriptions else None
        return {"plan": fallback or "standard", "has_active_subscription": False}

    def rank(row: Dict[str, Any]):
        plan = normalize_plan(row.get("plan")) or "standard"
        ts = row.get("updated_at") or row.get("created_at") or ""
        return (PLAN_RANK[plan], ts)

    best = max(active, key=rank)
    return {"plan": normalize_plan(best.get("plan")) or "standard", "has_active_subscription": True}


def count_user_stores(user_id: str, sb=None) -> int:
    sb = sb or require_supabase()
    res = sb.table("stores").select("id").eq("user_id", user_id).execute()
    return len(rows_of(res))


def count_paid_extra_store_credits(user_id: str, sb=None) -> int:
    """
    Paid extra-store purchases are `payments` rows tagged with the
    `extra_store_credit:` shop id prefix, one per checkout session.
    """
    sb = sb or require_supabase()
    last_error: Optional[APIError] = None

    for select, has_shop_id, has_status, has_session in _PAYMENT_SELECTS:
        try:
            res = sb.table("payments").select(select).eq("user_id", user_id).limit(5000).execute()
        except APIError as e:
            last_error = e
            if not is_missing_any_column_error(e, ["shop_id", "status", "stripe_session_id"]):
                raise
            continue

        if not has_shop_id:
            return 0

        counted = set()
        for index, row in enumerate(rows_of(res)):
            shop_id = (row.get("shop_id") or "").strip()
            if not shop_id.startswith(EXTRA_STORE_PAYMENT_PREFIX):
                continue
            if has_status and (row.get("status") or "").lower() != "paid":
                continue
            if has_session and row.get("stripe_session_id"):
                counted.add(f"session:{row['stripe_session_id']}")
            else:
                counted.add(f"row:{row.get('id') or index}")
        return len(counted)

    if last_error:
        raise last_error
    return 0


def build_upgrade_options(current_plan: str) -> List[Dict[str, Any]]:
    current_rank = PLAN_RANK[current_plan]
    return [
        {
            "plan": plan,
            "includedStores": STORE_LIMITS_BY_PLAN[plan],
            "monthlyPriceCents": PLAN_TO_MONTHLY_CENTS[plan],
        }
        for plan in PLAN_ORDER
        if PLAN_RANK[plan] > current_rank
    ]


def load_user_store_quota(user_id: str, sb=None) -> Dict[str, Any]:
    sb = sb or require_supabase()
    effective = resolve_effective_plan(load_user_subscriptions(user_id, sb))
    plan = effective["plan"]
    total = count_user_stores(user_id, sb)
    extras = count_paid_extra_store_credits(user_id, sb)

    limit = STORE_LIMITS_BY_PLAN[plan]
    remaining = limit + extras - total

    return {
        "plan": plan,
        "hasActiveSubscription": effective["has_active_subscription"],
        "includedStoreLimit": limit,
        "totalStores": total,
        "purchasedExtraStores": extras,
        "usedExtraStores": max(0, total - limit),
        "remainingSlots": remaining,
        "canCreateStore": remaining > 0,
        "extraStorePriceCents": EXTRA_STORE_PRICE_CENTS_BY_PLAN[plan],
        "upgradeOptions": build_upgrade_options(plan),
    }
