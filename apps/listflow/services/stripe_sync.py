# apps/listflow/services/stripe_sync.py
"""
Stripe -> Supabase reconciliation.

Webhook events are verified, logged once in `stripe_event_logs` (the event
id is unique, so a replay is a no-op) and folded into `subscriptions`,
`stores` and `payments`. A newly active subscription also fires the store's
automation webhook once per billing period.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import stripe
from postgrest.exceptions import APIError

from apps.listflow.db import (
    first_row,
    insert_with_fallback,
    is_missing_any_column_error,
    is_missing_column_error,
    is_missing_table_error,
    is_unique_violation,
    is_uuid,
    require_supabase,
    rows_of,
    update_with_fallback,
)
from apps.listflow.services.n8n import dispatch_n8n_trigger
from apps.listflow.services.scheduler.engine import (
    insert_scheduler_job,
    load_stores,
    resolve_store_webhooks,
    update_scheduler_job,
)
from apps.listflow.services.scheduler.idempotency import build_activation_idempotency_key
from apps.listflow.services.store_quota import PLAN_TO_MONTHLY_CENTS, normalize_plan
from apps.listflow.services.subscriptions import ACTIVE_STATUSES, stripe_client_key
from apps.listflow.services.webhooks.configs import is_active_automation_webhook, load_webhook_configs
from apps.listflow.services.webhooks.logs import load_store_webhook_mappings
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.stripe")

CRON_SYNC_EVENTS = {
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
CHECKOUT_ASYNC_EVENTS = {
    "checkout.session.async_payment_succeeded": "paid",
    "checkout.session.async_payment_failed": "failed",
}


class StripeSignatureError(ValueError):
    pass


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _iso_from_unix(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = ((subscription.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[str]:
    item = _first_item(subscription)
    return _iso_from_unix(item.get("current_period_end") or subscription.get("current_period_end"))


def _customer_id(customer: Any) -> Optional[str]:
    if isinstance(customer, str):
        return customer
    if isinstance(customer, dict):
        return customer.get("id")
    return None


# -------------------------
# Event verification + log
# -------------------------

def construct_event(payload: bytes, signature: Optional[str], mode: Optional[str] = None) -> Dict[str, Any]:
    """Verifies the signature and returns the event as a plain dict."""
    if not signature:
        raise StripeSignatureError("Missing stripe-signature")
    secret = settings.stripe_webhook_secret(mode)
    if not secret:
        raise StripeSignatureError("Stripe webhook secret is not configured")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise StripeSignatureError(str(e) or "Invalid signature") from e
    return json.loads(payload)


def persist_stripe_event(event: Dict[str, Any], sb=None) -> bool:
    """Logs the event. Returns False when it was already recorded."""
    sb = sb or require_supabase()
    base = {
        "stripe_event_id": event.get("id"),
        "event_type": event.get("type"),
        "payload": event,
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }
    for payload in ({**base, "stripe_mode": "live" if event.get("livemode") else "test"}, base):
        try:
            sb.table("stripe_event_logs").insert(payload).execute()
            return True
        except APIError as e:
            if is_unique_violation(e):
                return False
            if is_missing_table_error(e):
                raise RuntimeError(
                    "Missing table public.stripe_event_logs. Apply Supabase schema/migrations before processing Stripe webhooks."
                ) from e
            if not is_missing_column_error(e, "stripe_mode"):
                raise
    return True


# -------------------------
# Subscriptions
# -------------------------

def find_profile_user_id_by_email(email: Optional[str], sb=None) -> Optional[str]:
    if not email:
        return None
    sb = sb or require_supabase()
    row = first_row(sb.table("profiles").select("user_id").ilike("email", email.strip()).limit(1).execute())
    return (row or {}).get("user_id")


def resolve_customer_email(customer: Any) -> Optional[str]:
    if isinstance(customer, dict):
        return None if customer.get("deleted") else customer.get("email")
    if not isinstance(customer, str) or not customer:
        return None
    try:
        fetched = _as_dict(stripe.Customer.retrieve(customer, api_key=stripe_client_key()))
    except stripe.StripeError as e:
        log.warning("stripe customer %s lookup failed: %s", customer, e)
        return None
    return None if fetched.get("deleted") else fetched.get("email")


def build_subscription_row(
    subscription: Dict[str, Any],
    metadata: Dict[str, Any],
    user_id: Optional[str],
    customer_id: Optional[str],
) -> Dict[str, Any]:
    shop_id = metadata.get("shopId") or metadata.get("shop_id")
    return {
        "user_id": user_id,
        "shop_id": shop_id,
        "store_id": shop_id if is_uuid(shop_id) else None,
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription["id"],
        "plan": metadata.get("plan") or "standard",
        "status": subscription.get("status"),
        "current_period_end": subscription_period_end(subscription),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


def _save_subscription_row(row: Dict[str, Any], sb) -> Optional[Dict[str, Any]]:
    try:
        return first_row(sb.table("subscriptions").upsert(row, on_conflict="stripe_subscription_id").execute())
    except APIError as e:
        if "no unique or exclusion constraint" not in (e.message or "").lower():
            raise

    existing = first_row(
        sb.table("subscriptions").select("id").eq("stripe_subscription_id", row["stripe_subscription_id"]).limit(1).execute()
    )
    if existing:
        sb.table("subscriptions").update(row).eq("id", existing["id"]).execute()
        return {**row, "id": existing["id"]}
    return first_row(sb.table("subscriptions").insert(row).execute())


def upsert_subscription_from_stripe(
    subscription: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
    customer: Any = None,
    email: Optional[str] = None,
    trigger_activation: bool = False,
    sb=None,
) -> Dict[str, Any]:
    sb = sb or require_supabase()
    metadata = metadata or {}
    user_id = metadata.get("userId") or metadata.get("user_id") or find_profile_user_id_by_email(email, sb)
    customer_id = _customer_id(customer) or _customer_id(subscription.get("customer"))

    row = build_subscription_row(subscription, metadata, user_id, customer_id)
    saved = _save_subscription_row(row, sb) or row
    log.info("subscription %s synced status=%s", subscription["id"], row["status"])

    store_id = row["store_id"]
    if not store_id:
        return saved

    plan = normalize_plan(row["plan"]) or "standard"
    status = row["status"]
    unit_amount = (_first_item(subscription).get("price") or {}).get("unit_amount")
    sb.table("stores").update(
        {
            "status": "active" if status in ACTIVE_STATUSES else status,
            "price_cents": unit_amount if unit_amount is not None else PLAN_TO_MONTHLY_CENTS[plan],
        }
    ).eq("id", store_id).execute()

    if trigger_activation and status in ACTIVE_STATUSES:
        try:
            trigger_activation_automation(store_id, subscription, saved, plan, user_id, sb)
        except Exception:
            log.exception("activation dispatch failed for store %s", store_id)
    return saved


def mark_stripe_subscription_deleted(subscription: Dict[str, Any], sb=None) -> None:
    sb = sb or require_supabase()
    now_iso = datetime.now(timezone.utc).isoformat()
    sb.table("subscriptions").update(
        {
            "status": "canceled",
            "current_period_end": subscription_period_end(subscription),
            "updated_at": now_iso,
        }
    ).eq("stripe_subscription_id", subscription["id"]).execute()
    log.info("subscription %s marked canceled", subscription["id"])


def insert_invoice_payment(invoice: Dict[str, Any], succeeded: bool, sb=None) -> None:
    sb = sb or require_supabase()
    metadata = invoice.get("metadata") or {}
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    subscription_id = details.get("subscription") or invoice.get("subscription")
    sb.table("payments").insert(
        {
            "user_id": metadata.get("userId"),
            "shop_id": metadata.get("shopId"),
            "stripe_invoice_id": invoice.get("id"),
            "stripe_subscription_id": subscription_id if isinstance(subscription_id, str) else None,
            "amount_cents": invoice.get("amount_paid") or invoice.get("amount_due") or 0,
            "currency": invoice.get("currency") or "usd",
            "status": "paid" if succeeded else "failed",
        }
    ).execute()


# -------------------------
# Activation dispatch
# -------------------------

def trigger_activation_automation(
    store_id: str,
    subscription: Dict[str, Any],
    subscription_row: Dict[str, Any],
    plan: str,
    user_id: Optional[str],
    sb=None,
) -> Optional[str]:
    """
    First automation run for a freshly active store, keyed per billing
    period. Returns the job status written, or None when another delivery
    of the same event already claimed the period.
    """
    sb = sb or require_supabase()
    key = build_activation_idempotency_key(subscription["id"], store_id, subscription_period_end(subscription))
    job_owner = {"id": subscription_row.get("id") or subscription["id"], "user_id": user_id, "plan": plan}
    run_at = datetime.now(timezone.utc).isoformat()

    configs_by_id = {cfg["id"]: cfg for cfg in load_webhook_configs(sb)}
    webhook_id = resolve_store_webhooks(
        [store_id], load_stores([store_id], sb), load_store_webhook_mappings([store_id], sb), configs_by_id
    ).get(store_id)
    config = configs_by_id.get(webhook_id) if webhook_id else None

    def insert(status: str, error_message: Optional[str] = None):
        return insert_scheduler_job(
            sb,
            job_owner,
            idempotency_key=key,
            run_at=run_at,
            status=status,
            store_id=store_id,
            webhook_config_id=webhook_id,
            trigger_type="activation",
            request_payload={"client_id": store_id},
            error_message=error_message,
        )

    try:
        if not webhook_id:
            insert("skipped", "no_active_webhook_config")
            return "skipped"
        if not is_active_automation_webhook(config) or not config.get("enabled"):
            insert("skipped", "inactive_or_invalid_webhook_config")
            return "skipped"
        job = insert("processing")
    except APIError as e:
        if is_unique_violation(e):
            return None
        raise

    result = dispatch_n8n_trigger(
        url=config["target_url"],
        payload={"client_id": store_id},
        idempotency_key=key,
        method="GET" if config.get("method") == "GET" else "POST",
        headers=config.get("headers") or {},
        triggered_at=run_at,
    )
    status = "success" if result.ok else "failed"
    if job and job.get("id"):
        update_scheduler_job(
            sb,
            job["id"],
            status,
            response_status=result.status,
            response_payload=result.body,
            error_message=None if result.ok else result.body,
        )
    return status


# -------------------------
# Event dispatch
# -------------------------

def _retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    return _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=stripe_client_key()))


def handle_stripe_event(event: Dict[str, Any], sb=None) -> bool:
    """Applies one event. Returns True when the cron lifecycle should be re-synced."""
    sb = sb or require_supabase()
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed" and obj.get("mode") == "payment":
        sync_checkout_payment(obj, sb=sb)
        return False

    if event_type in CHECKOUT_ASYNC_EVENTS:
        if obj.get("mode") == "payment":
            sync_checkout_payment(obj, CHECKOUT_ASYNC_EVENTS[event_type], sb)
        return False

    if event_type == "checkout.session.completed":
        if obj.get("mode") != "subscription" or not isinstance(obj.get("subscription"), str):
            return False
        subscription = _retrieve_subscription(obj["subscription"])
        email = (
            (obj.get("customer_details") or {}).get("email")
            or obj.get("customer_email")
            or resolve_customer_email(obj.get("customer"))
        )
        metadata = {**(subscription.get("metadata") or {}), **(obj.get("metadata") or {})}
        upsert_subscription_from_stripe(subscription, metadata, obj.get("customer"), email, True, sb)
        return True

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        email = resolve_customer_email(obj.get("customer"))
        upsert_subscription_from_stripe(
            obj,
            obj.get("metadata") or {},
            obj.get("customer"),
            email,
            event_type == "customer.subscription.created",
            sb,
        )
        return True

    if event_type == "customer.subscription.deleted":
        mark_stripe_subscription_deleted(obj, sb)
        return True

    if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        insert_invoice_payment(obj, event_type == "invoice.payment_succeeded", sb)
        return False

    log.debug("stripe event %s ignored", event_type)
    return False


# -------------------------
# One-time checkout payments
# -------------------------

PAYMENT_COLUMNS = ("user_id", "shop_id", "stripe_session_id", "amount_cents", "currency", "status")
PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


def checkout_payment_status(status: Optional[str], forced: Optional[str] = None) -> str:
    if forced:
        return forced
    normalized = (status or "").lower()
    if normalized in PAID_CHECKOUT_STATUSES:
        return "paid"
    return "failed" if normalized == "failed" else "pending"


def checkout_order_id(session: Dict[str, Any]) -> Optional[str]:
    """Order id from metadata.orderId, or from a shopId of the form order_<uuid>."""
    metadata = session.get("metadata") or {}
    order_id = metadata.get("orderId")
    if is_uuid(order_id):
        return order_id
    shop_id = metadata.get("shopId") or ""
    if shop_id.startswith("order_") and is_uuid(shop_id[len("order_"):]):
        return shop_id[len("order_"):]
    return None


def _existing_payment_id(session_id: str, shop_id: Optional[str], sb) -> Optional[str]:
    try:
        row = first_row(sb.table("payments").select("id").eq("stripe_session_id", session_id).limit(1).execute())
        return (row or {}).get("id")
    except APIError as e:
        if not is_missing_column_error(e, "stripe_session_id"):
            raise
    # No session column: the newest payment for the same shop stands in.
    if not shop_id:
        return None
    try:
        row = first_row(
            sb.table("payments").select("id").eq("shop_id", shop_id).order("created_at", desc=True).limit(1).execute()
        )
    except APIError as e:
        if is_missing_column_error(e, "shop_id"):
            return None
        raise
    return (row or {}).get("id")


def _payment_shapes(full: Dict[str, Any]) -> List[Dict[str, Any]]:
    def without(*keys: str) -> Dict[str, Any]:
        return {k: v for k, v in full.items() if k not in keys}

    return [full, without("shop_id"), without("stripe_session_id"), without("user_id", "shop_id", "stripe_session_id")]


def _mark_order_payment(order_id: str, user_id: Optional[str], status: str, sb) -> bool:
    last_error: Optional[APIError] = None
    for patch in ({"payment_status": status, "updated_at": datetime.now(timezone.utc).isoformat()}, {"payment_status": status}):
        query = sb.table("orders").update(patch).eq("id", order_id)
        if is_uuid(user_id):
            query = query.eq("user_id", user_id)
        try:
            return bool(rows_of(query.execute()))
        except APIError as e:
            if not is_missing_any_column_error(e, ("payment_status", "updated_at", "user_id")):
                raise
            last_error = e
    raise last_error or RuntimeError("order payment status update failed")


def sync_checkout_payment(session: Dict[str, Any], forced_status: Optional[str] = None, sb=None) -> Dict[str, Any]:
    """
    Mirrors a one-time (mode=payment) checkout session into `payments` and the
    linked order's payment_status. Re-running for the same session updates in place.
    """
    sb = sb or require_supabase()
    metadata = session.get("metadata") or {}
    status = checkout_payment_status(session.get("payment_status"), forced_status)
    shop_id = metadata.get("shopId")
    order_id = checkout_order_id(session)
    full = {
        "user_id": metadata.get("userId"),
        "shop_id": shop_id,
        "stripe_session_id": session["id"],
        "amount_cents": session.get("amount_total") or 0,
        "currency": (session.get("currency") or "usd").lower(),
        "status": status,
    }

    payment_id = _existing_payment_id(session["id"], shop_id, sb)
    if payment_id:
        update_with_fallback(sb, "payments", _payment_shapes(full), PAYMENT_COLUMNS, {"id": payment_id})
    else:
        payment_id = (insert_with_fallback(sb, "payments", _payment_shapes(full), PAYMENT_COLUMNS) or {}).get("id")

    order_updated = _mark_order_payment(order_id, metadata.get("userId"), status, sb) if order_id else False
    log.info("checkout %s synced status=%s order=%s updated=%s", session["id"], status, order_id, order_updated)
    return {"paymentId": payment_id, "paymentStatus": status, "orderId": order_id, "orderUpdated": order_updated}


def _collect_order_sessions(mode: str, since_unix: int, max_sessions: int) -> Tuple[List[Dict[str, Any]], int]:
    api_key = stripe_client_key(mode)
    sessions: List[Dict[str, Any]] = []
    scanned = 0
    starting_after: Optional[str] = None
    while len(sessions) < max_sessions:
        params: Dict[str, Any] = {"api_key": api_key, "limit": 100, "created": {"gte": since_unix}}
        if starting_after:
            params["starting_after"] = starting_after
        page = _as_dict(stripe.checkout.Session.list(**params))
        data = [_as_dict(s) for s in page.get("data") or []]
        if not data:
            break
        scanned += len(data)
        for session in data:
            if session.get("mode") == "payment" and checkout_order_id(session):
                sessions.append(session)
                if len(sessions) >= max_sessions:
                    break
        if not page.get("has_more"):
            break
        starting_after = data[-1]["id"]
    return sessions, scanned


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return min(high, max(low, number))


def reconcile_checkout_payments(
    mode: Optional[str] = "all",
    days: Any = None,
    max_sessions: Any = None,
    dry_run: bool = False,
    sb=None,
) -> Dict[str, Any]:
    """
    Re-syncs paid one-time checkout sessions of the last `days` days into
    payments and orders, for one Stripe mode or both. A mode whose session
    scan fails becomes a warning; ValueError when no mode could be scanned.
    """
    days = _clamp(days, 180, 1, 3650)
    max_sessions = _clamp(max_sessions, 500, 20, 2000)
    requested = mode if mode in ("live", "test") else "all"
    if requested == "all":
        active = settings.STRIPE_MODE
        modes = [active, "test" if active == "live" else "live"]
    else:
        modes = [requested]
    since_unix = int(datetime.now(timezone.utc).timestamp()) - days * 86400

    warnings: List[str] = []
    summaries: List[Dict[str, Any]] = []
    for stripe_mode in modes:
        try:
            sessions, scanned = _collect_order_sessions(stripe_mode, since_unix, max_sessions)
        except (stripe.StripeError, RuntimeError, ValueError) as e:
            warnings.append(f"{stripe_mode}: {str(e) or 'session scan failed'}")
            continue

        summary: Dict[str, Any] = {
            "mode": stripe_mode,
            "scannedSessions": scanned,
            "eligibleSessions": len(sessions),
            "paidCandidates": 0,
            "syncedSessions": 0,
            "ordersMarkedPaid": 0,
            "skippedNotPaid": 0,
            "failures": [],
        }
        for session in sessions:
            if (session.get("payment_status") or "").lower() not in PAID_CHECKOUT_STATUSES:
                summary["skippedNotPaid"] += 1
                continue
            summary["paidCandidates"] += 1
            if dry_run:
                continue
            try:
                result = sync_checkout_payment(session, "paid", sb)
            except (APIError, RuntimeError) as e:
                summary["failures"].append({"sessionId": session["id"], "reason": getattr(e, "message", None) or str(e) or "sync_failed"})
                continue
            summary["syncedSessions"] += 1
            if result["orderUpdated"]:
                summary["ordersMarkedPaid"] += 1
        summaries.append(summary)

    if not summaries:
        raise ValueError("Stripe checkout sessions could not be read. " + "; ".join(warnings))

    counters = ("scannedSessions", "eligibleSessions", "paidCandidates", "syncedSessions", "ordersMarkedPaid", "skippedNotPaid")
    log.info("checkout reconcile modes=%s dry_run=%s", [s["mode"] for s in summaries], dry_run)
    return {
        "requestedMode": requested,
        "processedModes": [s["mode"] for s in summaries],
        "days": days,
        "maxSessions": max_sessions,
        "dryRun": dry_run,
        **{key: sum(s[key] for s in summaries) for key in counters},
        "failures": [{**f, "mode": s["mode"]} for s in summaries for f in s["failures"]],
        "warnings": warnings,
        "modeSummaries": summaries,
    }


# -------------------------
# Price rebind
# -------------------------

def rebind_subscription_prices(dry_run: bool = False, mode: Optional[str] = None, sb=None) -> Dict[str, Any]:
    """
    Moves every active subscription's first item onto the price currently
    configured for its plan and interval.
    """
    sb = sb or require_supabase()
    mode = mode if mode in ("live", "test") else settings.STRIPE_MODE
    api_key = stripe_client_key(mode)

    res = (
        sb.table("subscriptions")
        .select("id,plan,stripe_subscription_id,status")
        .in_("status", list(ACTIVE_STATUSES))
        .execute()
    )
    rows: List[Dict[str, Any]] = [row for row in rows_of(res) if row.get("stripe_subscription_id")]

    scanned = updated = 0
    skipped: List[Dict[str, str]] = []
    failures: List[Dict[str, str]] = []

    for row in rows:
        stripe_id = row["stripe_subscription_id"]
        scanned += 1
        try:
            current = _as_dict(stripe.Subscription.retrieve(stripe_id, api_key=api_key, expand=["items.data.price"]))
            item = _first_item(current)
            price = item.get("price") or {}
            interval = (price.get("recurring") or {}).get("interval")
            if not item or not price or interval not in ("month", "year"):
                skipped.append({"subscriptionId": stripe_id, "reason": "missing_item_or_interval"})
                continue

            plan = row.get("plan") or (current.get("metadata") or {}).get("plan")
            if plan not in PLAN_TO_MONTHLY_CENTS:
                skipped.append({"subscriptionId": stripe_id, "reason": "missing_plan"})
                continue

            target = settings.stripe_price_id(plan, interval, mode)
            if not target:
                raise RuntimeError(f"No Stripe price configured for {plan}/{interval} ({mode})")
            if target == price.get("id"):
                skipped.append({"subscriptionId": stripe_id, "reason": "already_synced"})
                continue

            if not dry_run:
                stripe.Subscription.modify(
                    stripe_id,
                    api_key=api_key,
                    proration_behavior="none",
                    items=[{"id": item["id"], "price": target}],
                    metadata={**(current.get("metadata") or {}), "plan": plan, "billingInterval": interval},
                )
            updated += 1
        except (stripe.StripeError, RuntimeError) as e:
            failures.append({"subscriptionId": stripe_id, "reason": str(e) or "unknown_error"})

    log.info("stripe rebind mode=%s scanned=%s updated=%s dry_run=%s", mode, scanned, updated, dry_run)
    return {
        "mode": mode,
        "scanned": scanned,
        "updated": updated,
        "skipped": skipped,
        "failures": failures,
        "dryRun": dry_run,
    }
