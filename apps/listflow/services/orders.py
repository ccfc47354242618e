# apps/listflow/services/orders.py
"""
User orders and their Navlungo shipment status.

The `orders` table grew in migrations (receiver fields, then navlungo_*
columns), so reads and writes walk from the widest column set down.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from apps.listflow.db import (
    first_row,
    is_missing_any_column_error,
    is_missing_table_error,
    is_recoverable_column_error,
    require_supabase,
    rows_of,
    write_dropping_missing_columns,
)
from apps.listflow.services.navlungo.shipment import ShipmentInput, ShipmentResult, dispatch_order_shipment

log = logging.getLogger("listflow.orders")

MISSING_TABLE_HINT = (
    "Table public.orders does not exist in remote schema yet. "
    "Apply the latest orders migration in supabase/migrations."
)

_BASE = "id,user_id,category_name,sub_product_name,product_link,order_date,shipping_address,label_number,amount_usd,payment_status,created_at"
_RECEIVER = "receiver_name,receiver_phone,receiver_country_code,receiver_state,receiver_city,receiver_town,receiver_postal_code"
_NAVLUNGO = (
    "navlungo_status,navlungo_error,navlungo_store_id,navlungo_search_id,navlungo_quote_reference,"
    "navlungo_shipment_id,navlungo_shipment_reference,navlungo_tracking_url"
)

ORDER_SELECTS = (
    f"{_BASE},updated_at,store_id,variant_name,note,ioss,{_RECEIVER},{_NAVLUNGO},navlungo_response,navlungo_last_synced_at",
    f"{_BASE},updated_at,store_id,variant_name,note,ioss,{_RECEIVER},{_NAVLUNGO},navlungo_last_synced_at",
    f"{_BASE},updated_at,store_id,variant_name,note,ioss,{_RECEIVER}",
    f"{_BASE},updated_at,variant_name,note,ioss",
    _BASE,
)
ORDER_BY = ("created_at", "order_date", "id")

STORE_CONTEXT_SELECTS = (
    "id,store_name,phone,currency,store_currency,navlungo_store_id",
    "id,store_name,phone,currency,store_currency",
    "id,store_name,phone,currency",
    "id,name,phone,currency",
    "id,store_name,phone",
    "id,name,phone",
    "id,store_name",
    "id,name",
    "id",
)
PROFILE_CONTEXT_SELECTS = ("full_name,email,phone", "full_name,email", "full_name", "email")

_COUNTRY = re.compile(r"^[A-Z]{2}$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class OrderError(Exception):
    def __init__(self, message: str, status: int = 400, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


# -------------------------
# Parsing
# -------------------------

def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def as_country_code(value: Any) -> str:
    candidate = _text(value).upper()
    return candidate if _COUNTRY.match(candidate) else ""


def as_order_date(value: Any) -> str:
    candidate = _text(value)
    return candidate if _DATE.match(candidate) else _today()


def as_amount(value: Any) -> float:
    try:
        return float(value if value not in (None, "") else 0)
    except (TypeError, ValueError):
        return 0.0


def parse_order_body(body: Dict[str, Any]) -> Dict[str, Any]:
    receiver_city = _text(body.get("receiverCity"))
    return {
        "store_id": _text(body.get("storeId")) or None,
        "category": _text(body.get("category")) or _text(body.get("productName")),
        "sub_product_name": _text(body.get("subProductName")),
        "variant_name": _text(body.get("variantName")) or None,
        "product_link": _text(body.get("productLink")),
        "address": _text(body.get("address")),
        "receiver_name": _text(body.get("receiverName")),
        "receiver_phone": _text(body.get("receiverPhone")),
        "receiver_country_code": as_country_code(body.get("receiverCountryCode") or body.get("country")),
        "receiver_state": _text(body.get("receiverState")) or None,
        "receiver_city": receiver_city,
        "receiver_town": _text(body.get("receiverTown")) or receiver_city,
        "receiver_postal_code": _text(body.get("receiverPostalCode")),
        "note": _text(body.get("note")) or None,
        "ioss": _text(body.get("ioss")) or None,
        "label_number": _text(body.get("labelNumber")),
        "amount_usd": as_amount(body.get("price", body.get("amount"))),
        "date": as_order_date(body.get("date")),
    }


def validate_order(order: Dict[str, Any]) -> None:
    required = ("category", "sub_product_name", "product_link", "address", "label_number")
    if any(not order[key] for key in required):
        raise OrderError("Missing required order fields.")
    receiver = (
        "receiver_name",
        "receiver_phone",
        "receiver_country_code",
        "receiver_city",
        "receiver_town",
        "receiver_postal_code",
    )
    if any(not order[key] for key in receiver):
        raise OrderError("Missing required receiver fields for Navlungo shipment.")
    if order["amount_usd"] < 0:
        raise OrderError("Order amount must be zero or positive.")


def map_order_row(row: Dict[str, Any]) -> Dict[str, Any]:
    created_at = row.get("created_at") or ""
    payment_status = (row.get("payment_status") or "pending").lower()
    return {
        "id": row.get("id"),
        "productName": row.get("category_name") or "",
        "subProductName": row.get("sub_product_name") or "",
        "variantName": row.get("variant_name") or None,
        "productLink": row.get("product_link") or "",
        "category": row.get("category_name") or "",
        "date": row.get("order_date") or (created_at.split("T")[0] if created_at else _today()),
        "address": row.get("shipping_address") or "",
        "receiverName": row.get("receiver_name") or None,
        "receiverPhone": row.get("receiver_phone") or None,
        "receiverCountryCode": row.get("receiver_country_code") or None,
        "receiverState": row.get("receiver_state") or None,
        "receiverCity": row.get("receiver_city") or None,
        "receiverTown": row.get("receiver_town") or None,
        "receiverPostalCode": row.get("receiver_postal_code") or None,
        "isPaid": payment_status == "paid",
        "note": row.get("note") or None,
        "ioss": row.get("ioss") or None,
        "labelNumber": row.get("label_number") or "",
        "price": as_amount(row.get("amount_usd")),
        "storeId": row.get("store_id") or None,
        "paymentStatus": payment_status,
        "navlungoStatus": row.get("navlungo_status") or None,
        "navlungoError": row.get("navlungo_error") or None,
        "navlungoStoreId": row.get("navlungo_store_id") or None,
        "navlungoSearchId": row.get("navlungo_search_id") or None,
        "navlungoQuoteReference": row.get("navlungo_quote_reference") or None,
        "navlungoShipmentId": row.get("navlungo_shipment_id") or None,
        "navlungoShipmentReference": row.get("navlungo_shipment_reference") or None,
        "navlungoTrackingUrl": row.get("navlungo_tracking_url") or None,
        "navlungoLastSyncedAt": row.get("navlungo_last_synced_at") or None,
        "createdAt": row.get("created_at") or None,
        "updatedAt": row.get("updated_at") or None,
    }


# -------------------------
# Reads
# -------------------------

def list_user_orders(user_id: str, sb=None) -> List[Dict[str, Any]]:
    sb = sb or require_supabase()
    last_error: Optional[APIError] = None
    for select in ORDER_SELECTS:
        for order_by in ORDER_BY:
            query = sb.table("orders").select(select).eq("user_id", user_id).order(order_by, desc=True)
            if order_by != "id":
                query = query.order("id", desc=True)
            try:
                return rows_of(query.execute())
            except APIError as e:
                last_error = e
                if not is_recoverable_column_error(e):
                    raise
    raise last_error or RuntimeError("orders could not be loaded")


def load_user_store_ids(user_id: str, sb=None) -> List[str]:
    sb = sb or require_supabase()
    res = sb.table("stores").select("id").eq("user_id", user_id).order("created_at").limit(5000).execute()
    return [row["id"] for row in rows_of(res) if row.get("id")]


def resolve_order_store(requested: Optional[str], owned: List[str]) -> Optional[str]:
    if requested:
        if requested not in owned:
            raise OrderError("Selected store does not belong to the current user.", 403, "STORE_NOT_OWNED")
        return requested
    if len(owned) == 1:
        return owned[0]
    if len(owned) > 1:
        raise OrderError("storeId is required when you have more than one store.", 400, "STORE_ID_REQUIRED")
    return None


def _first_with_fallback(build, candidates) -> Optional[Dict[str, Any]]:
    last_error: Optional[APIError] = None
    for select in candidates:
        try:
            return first_row(build(select).execute())
        except APIError as e:
            last_error = e
            if not is_recoverable_column_error(e):
                break
    if last_error:
        raise last_error
    return None


def load_store_context(user_id: str, store_id: str, sb=None) -> Optional[Dict[str, Any]]:
    sb = sb or require_supabase()
    return _first_with_fallback(
        lambda select: sb.table("stores").select(select).eq("id", store_id).eq("user_id", user_id).limit(1),
        STORE_CONTEXT_SELECTS,
    )


def load_profile_context(user_id: str, sb=None) -> Optional[Dict[str, Any]]:
    sb = sb or require_supabase()
    return _first_with_fallback(
        lambda select: sb.table("profiles").select(select).eq("user_id", user_id).limit(1),
        PROFILE_CONTEXT_SELECTS,
    )


# -------------------------
# Writes
# -------------------------

def insert_order(user_id: str, store_id: Optional[str], order: Dict[str, Any], sb=None) -> Dict[str, Any]:
    sb = sb or require_supabase()
    now_iso = datetime.now(timezone.utc).isoformat()
    minimal = {
        "user_id": user_id,
        "category_name": order["category"],
        "sub_product_name": order["sub_product_name"],
        "product_link": order["product_link"],
        "order_date": order["date"],
        "shipping_address": order["address"],
        "label_number": order["label_number"],
        "amount_usd": order["amount_usd"],
        "payment_status": "pending",
    }
    legacy = {
        **minimal,
        "variant_name": order["variant_name"],
        "note": order["note"],
        "ioss": order["ioss"],
        "updated_at": now_iso,
    }
    full = {
        **legacy,
        "store_id": store_id,
        "receiver_name": order["receiver_name"],
        "receiver_phone": order["receiver_phone"],
        "receiver_country_code": order["receiver_country_code"],
        "receiver_state": order["receiver_state"],
        "receiver_city": order["receiver_city"],
        "receiver_town": order["receiver_town"],
        "receiver_postal_code": order["receiver_postal_code"],
    }

    last_error: Optional[APIError] = None
    for payload in (full, legacy, minimal):
        try:
            row = first_row(sb.table("orders").insert(payload).execute())
        except APIError as e:
            last_error = e
            if not is_recoverable_column_error(e):
                break
            continue
        if row:
            return row

    if last_error is not None and is_missing_table_error(last_error):
        raise OrderError(MISSING_TABLE_HINT, 400)
    raise OrderError(last_error.message if last_error else "Order could not be created", 500)


def shipment_update_payload(result: ShipmentResult) -> Dict[str, Any]:
    now_iso = datetime.now(timezone.utc).isoformat()
    if result.status == "started":
        return {
            "navlungo_status": "shipment_started",
            "navlungo_error": None,
            "navlungo_store_id": result.store_id,
            "navlungo_search_id": result.search_id,
            "navlungo_quote_reference": result.quote_reference,
            "navlungo_shipment_id": result.shipment_id,
            "navlungo_shipment_reference": result.shipment_reference,
            "navlungo_tracking_url": result.tracking_url,
            "navlungo_response": result.response,
            "navlungo_last_synced_at": now_iso,
            "updated_at": now_iso,
        }
    if result.status == "failed":
        status = "quote_failed" if result.code == "QUOTE_FAILED" else "shipment_failed"
    else:
        status = "skipped"
    return {
        "navlungo_status": status,
        "navlungo_error": result.message,
        "navlungo_response": result.response or None,
        "navlungo_last_synced_at": now_iso,
        "updated_at": now_iso,
    }


def update_order_columns(order_id: str, user_id: str, payload: Dict[str, Any], sb=None) -> Optional[Dict[str, Any]]:
    """Writes whatever subset of `payload` the orders table currently has."""
    sb = sb or require_supabase()
    res, written = write_dropping_missing_columns(
        lambda p: sb.table("orders").update(p).eq("id", order_id).eq("user_id", user_id).execute(),
        payload,
    )
    if written != payload:
        log.info("order %s update skipped columns: %s", order_id, sorted(set(payload) - set(written)))
    return first_row(res)


def persist_navlungo_store_id(user_id: str, store_id: str, navlungo_store_id: Optional[str], sb=None) -> None:
    value = (navlungo_store_id or "").strip()
    if not value:
        return
    sb = sb or require_supabase()
    for payload in (
        {"navlungo_store_id": value, "updated_at": datetime.now(timezone.utc).isoformat()},
        {"navlungo_store_id": value},
    ):
        try:
            sb.table("stores").update(payload).eq("id", store_id).eq("user_id", user_id).execute()
            return
        except APIError as e:
            if not is_missing_any_column_error(e, ("navlungo_store_id", "updated_at")):
                log.warning("store %s navlungo id not saved: %s", store_id, e.message)
                return


def _shipment_input(order_row, order, user, store_id, store_ctx, profile_ctx) -> ShipmentInput:
    store_ctx = store_ctx or {}
    profile_ctx = profile_ctx or {}
    return ShipmentInput(
        order_id=order_row["id"],
        local_store_id=store_id,
        navlungo_store_id=(store_ctx.get("navlungo_store_id") or "").strip() or None,
        store_name=store_ctx.get("store_name") or store_ctx.get("name"),
        store_phone=store_ctx.get("phone"),
        user_email=profile_ctx.get("email") or user.get("email"),
        user_full_name=profile_ctx.get("full_name"),
        user_phone=profile_ctx.get("phone"),
        category_name=order["category"],
        product_name=order["sub_product_name"],
        variant_name=order["variant_name"],
        shipping_address=order["address"],
        receiver_name=order["receiver_name"],
        receiver_phone=order["receiver_phone"],
        receiver_country_code=order["receiver_country_code"],
        receiver_state=order["receiver_state"],
        receiver_city=order["receiver_city"],
        receiver_town=order["receiver_town"],
        receiver_postal_code=order["receiver_postal_code"],
        label_number=order["label_number"],
        amount_usd=order["amount_usd"],
        currency=store_ctx.get("store_currency") or store_ctx.get("currency"),
    )


def create_order(user: Dict[str, Any], body: Dict[str, Any], sb=None) -> Dict[str, Any]:
    """
    Inserts the order, then starts its Navlungo shipment. Shipment problems
    never fail the request; they are reported under `shipment`.
    """
    sb = sb or require_supabase()
    order = parse_order_body(body)
    store_id = resolve_order_store(order["store_id"], load_user_store_ids(user["id"], sb))
    validate_order(order)

    created = insert_order(user["id"], store_id, order, sb)
    final_row = created

    if store_id:
        try:
            store_ctx = load_store_context(user["id"], store_id, sb)
            profile_ctx = load_profile_context(user["id"], sb)
            result = dispatch_order_shipment(_shipment_input(created, order, user, store_id, store_ctx, profile_ctx))
            if result.status == "started":
                persist_navlungo_store_id(user["id"], store_id, result.store_id, sb)
        except Exception as e:
            log.exception("shipment orchestration failed for order %s", created.get("id"))
            result = ShipmentResult("failed", "UNEXPECTED_ERROR", str(e) or "Unexpected Navlungo orchestration error")
    else:
        result = ShipmentResult(
            "skipped", "MISSING_STORE_ID", "Store selection is missing; Navlungo shipment was not started."
        )

    try:
        updated = update_order_columns(created["id"], user["id"], shipment_update_payload(result), sb)
        if updated:
            final_row = updated
    except APIError as e:
        log.warning("order %s shipment status not persisted: %s", created.get("id"), e.message)

    return {"row": map_order_row(final_row), "shipment": result.to_dict()}


def delete_order(user_id: str, order_id: str, sb=None) -> str:
    sb = sb or require_supabase()
    try:
        res = sb.table("orders").delete().eq("id", order_id).eq("user_id", user_id).execute()
    except APIError as e:
        if is_missing_table_error(e):
            raise OrderError(MISSING_TABLE_HINT, 400) from e
        raise
    row = first_row(res)
    if not row or not row.get("id"):
        raise OrderError("Order not found.", 404)
    return row["id"]
