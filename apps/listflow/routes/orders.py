# apps/listflow/routes/orders.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from postgrest.exceptions import APIError

from apps.listflow.db import is_missing_table_error, require_supabase
from apps.listflow.services.auth import require_user
from apps.listflow.services.orders import (
    MISSING_TABLE_HINT,
    OrderError,
    create_order,
    delete_order,
    list_user_orders,
    map_order_row,
)
from apps.listflow.utils.envelope import fail

log = logging.getLogger("listflow.orders")

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _order_error(e: OrderError):
    if e.code:
        return fail(e.message, e.status, e.code)
    return fail(e.message, e.status)


@router.get("")
def get_orders(user: Dict[str, Any] = Depends(require_user)):
    try:
        rows = list_user_orders(user["id"])
    except APIError as e:
        if is_missing_table_error(e):
            return {"rows": [], "warning": MISSING_TABLE_HINT}
        raise
    return {"rows": [map_order_row(row) for row in rows]}


@router.post("")
def post_order(body: Dict[str, Any] = Body(default_factory=dict), user: Dict[str, Any] = Depends(require_user)):
    try:
        result = create_order(user, body, require_supabase())
    except OrderError as e:
        return _order_error(e)

    shipment = result["shipment"]
    log.info("order %s created; shipment %s (%s)", result["row"].get("id"), shipment["status"], shipment["code"])
    return result


@router.delete("")
def remove_order(
    id: Optional[str] = Query(None),
    body: Optional[Dict[str, Any]] = Body(None),
    user: Dict[str, Any] = Depends(require_user),
):
    order_id = (id or "").strip()
    if not order_id and isinstance(body, dict) and isinstance(body.get("id"), str):
        order_id = body["id"].strip()
    if not order_id:
        return fail("Order id is required.", 400)

    try:
        deleted = delete_order(user["id"], order_id)
    except OrderError as e:
        return _order_error(e)
    return {"ok": True, "id": deleted}
