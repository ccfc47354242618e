# apps/listflow/services/navlungo/shipment.py
"""
Order -> Navlungo shipment.

Flow: resolve (or provision) the Navlungo store, request a quote for one
default package, ship the first quote. Every outcome comes back as a
ShipmentResult; only programming errors escape.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from apps.listflow.services.navlungo.client import NavlungoApiError, NavlungoClient, is_navlungo_configured
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.navlungo")

DEFAULT_HS_CODE = "491199"
SHIPMENT_TYPES = ("sales", "sample", "micro-export", "gift")

_COUNTRY = re.compile(r"^[A-Z]{2}$")
_POSTAL = re.compile(r"\b\d{4,10}\b")


@dataclass
class ShipmentInput:
    order_id: str
    local_store_id: str
    category_name: str
    product_name: str
    shipping_address: str
    label_number: str
    amount_usd: float
    navlungo_store_id: Optional[str] = None
    store_name: Optional[str] = None
    store_phone: Optional[str] = None
    user_email: Optional[str] = None
    user_full_name: Optional[str] = None
    user_phone: Optional[str] = None
    variant_name: Optional[str] = None
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    receiver_country_code: Optional[str] = None
    receiver_state: Optional[str] = None
    receiver_city: Optional[str] = None
    receiver_town: Optional[str] = None
    receiver_postal_code: Optional[str] = None
    currency: Optional[str] = None


@dataclass
class ShipmentResult:
    status: str  # started | skipped | failed
    code: Optional[str] = None
    message: str = ""
    store_id: Optional[str] = None
    search_id: Optional[str] = None
    quote_reference: Optional[str] = None
    shipment_id: Optional[str] = None
    shipment_reference: Optional[str] = None
    tracking_url: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "code": self.code,
            "message": self.message,
            "storeId": self.store_id,
            "searchId": self.search_id,
            "quoteReference": self.quote_reference,
            "shipmentId": self.shipment_id,
            "shipmentReference": self.shipment_reference,
            "trackingUrl": self.tracking_url,
        }


# -------------------------
# Normalisation
# -------------------------

def _default(name: str) -> Optional[str]:
    value = settings.navlungo_default(name, "").strip()
    return value or None


def _default_number(name: str, fallback: float) -> float:
    raw = _default(name)
    try:
        parsed = float(raw) if raw else fallback
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def normalize_country_code(value: Optional[str], fallback: str = "US") -> str:
    candidate = (value or "").strip().upper()
    return candidate if _COUNTRY.match(candidate) else fallback


def normalize_currency_code(value: Optional[str]) -> str:
    return "TRY" if (value or "").strip().upper() == "TRY" else "USD"


def normalize_phone(value: Optional[str]) -> str:
    digits = re.sub(r"[^\d+]", "", (value or "").strip())
    if not digits:
        return ""
    return digits if digits.startswith("+") else f"+{digits}"


def sanitize_sku(value: str, fallback: str) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9\-_]", "", re.sub(r"\s+", "", value or ""))
    return (normalized or fallback)[:80]


def shipment_type() -> str:
    raw = (settings.navlungo_default("shipment_type", "") or "").strip().lower()
    return raw if raw in SHIPMENT_TYPES else "sales"


def _segment_from_end(parts: List[str], index_from_end: int, fallback: str) -> str:
    index = len(parts) - 1 - index_from_end
    if 0 <= index < len(parts) and parts[index]:
        return parts[index]
    return fallback


def parse_receiver_address(raw: str, fallback_contact: str, fallback_country: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort split of a free-text address: the last segments are read as
    town and city, the first as the contact name, the first 4-10 digit run as
    the postal code. Missing parts come from NAVLUNGO_DEFAULT_DEST_*.
    """
    lines = [part.strip() for part in (raw or "").replace("\r", "").split("\n")]
    compact = ", ".join(part for part in lines if part)
    if not compact:
        return None

    parts = [part.strip() for part in compact.split(",") if part.strip()]
    postal = _POSTAL.search(compact)
    detected_country = next((p.upper() for p in parts if _COUNTRY.match(p.upper())), None)

    fallback_city = _default("dest_city") or "Istanbul"
    fallback_town = _default("dest_town") or fallback_city
    fallback_postal = _default("dest_postal_code") or "34000"

    first_line = ", ".join(parts[: max(len(parts) - 2, 1)])[:120] or compact[:120]
    contact = parts[0] if parts and len(parts[0]) >= 3 else fallback_contact

    return {
        "contactName": (contact[:80] or "Listflow Customer"),
        "countryCode": normalize_country_code(
            detected_country, normalize_country_code(_default("dest_country"), fallback_country)
        ),
        "state": _default("dest_state"),
        "town": _segment_from_end(parts, 1, fallback_town)[:80],
        "city": _segment_from_end(parts, 2, fallback_city)[:80],
        "postalCode": (postal.group(0) if postal else fallback_postal)[:20],
        "firstLine": first_line[:120],
    }


def resolve_receiver_address(data: ShipmentInput, fallback_contact: str, fallback_country: str) -> Optional[Dict[str, Any]]:
    parsed = parse_receiver_address(data.shipping_address, fallback_contact, fallback_country)
    if not parsed:
        return None

    def explicit(value: Optional[str]) -> str:
        return (value or "").strip()

    address = {
        "contactName": explicit(data.receiver_name) or parsed["contactName"],
        "countryCode": normalize_country_code(data.receiver_country_code, "") or parsed["countryCode"],
        "state": explicit(data.receiver_state) or parsed["state"],
        "town": (explicit(data.receiver_town) or parsed["town"])[:80],
        "city": (explicit(data.receiver_city) or parsed["city"])[:80],
        "postalCode": (explicit(data.receiver_postal_code) or parsed["postalCode"])[:20],
        "firstLine": (explicit(data.shipping_address)[:120] or parsed["firstLine"])[:120],
    }
    if not address["state"]:
        address.pop("state")
    return address


def sender_address() -> Dict[str, Any]:
    return {
        "type": "Individual",
        "identificationNumber": _default("sender_identification_number") or "",
        "contactName": _default("sender_contact_name") or "",
        "contactPhone": normalize_phone(_default("sender_contact_phone")),
        "contactMail": _default("sender_contact_mail") or "",
        "countryCode": normalize_country_code(_default("sender_country_code"), "TR"),
        "city": _default("sender_city") or "",
        "town": _default("sender_town") or "",
        "postalCode": _default("sender_postal_code") or "",
        "firstLine": _default("sender_first_line") or "",
    }


def required_additional_services(quote: Dict[str, Any]) -> List[str]:
    seen: List[str] = []
    for service in quote.get("additionalServices") or []:
        code = (service.get("serviceCode") or "").strip()
        if service.get("isRequired") and code and code not in seen:
            seen.append(code)
    return seen


def build_quote_payload(data: ShipmentInput, receiver_address: Dict[str, Any], receiver_phone: str) -> Dict[str, Any]:
    product = f"{data.product_name} - {data.variant_name}" if data.variant_name else data.product_name
    return {
        "order": {
            "orderReference": data.order_id,
            "currencyCode": normalize_currency_code(data.currency),
            "receiverAddress": receiver_address,
            "receiverEmail": data.user_email,
            "receiverPhoneNumber": receiver_phone,
            "orderItems": [
                {
                    "quantity": 1,
                    "price": f"{data.amount_usd:.2f}",
                    "description": f"{data.category_name} | {product}"[:200],
                    "sku": sanitize_sku(data.label_number, f"order-{data.order_id}"),
                    "hsCode": _default("hs_code") or DEFAULT_HS_CODE,
                }
            ],
        },
        "packages": [
            {
                "quantity": 1,
                "type": _default("package_type") or "box",
                "weight": _default_number("package_weight_kg", 0.5),
                "width": _default_number("package_width_cm", 20),
                "length": _default_number("package_length_cm", 30),
                "height": _default_number("package_height_cm", 5),
            }
        ],
        "shipmentType": shipment_type(),
    }


def _is_already_exists(error: NavlungoApiError) -> bool:
    combined = " ".join(
        str(part or "") for part in (error.problem_code, error.details.get("title"), error.details.get("detail"))
    ).lower()
    return any(marker in combined for marker in ("already", "exist", "duplicate", "zaten"))


def ensure_navlungo_store(client: NavlungoClient, data: ShipmentInput) -> tuple[str, bool]:
    """Returns (navlungo_store_id, provisioned_now)."""
    explicit = (data.navlungo_store_id or "").strip()
    if explicit:
        return explicit, False

    local_id = (data.local_store_id or "").strip()
    address = sender_address()
    try:
        created = client.create_store(
            {
                "name": (data.store_name or "").strip() or f"Listflow Store {local_id[:8]}",
                "storeId": local_id,
                "storeAddress": address,
                "invoiceAddress": address,
            }
        )
    except NavlungoApiError as e:
        if _is_already_exists(e):
            return local_id, False
        raise
    return (str(created.get("storeId") or "").strip() or local_id), True


# -------------------------
# Dispatch
# -------------------------

def dispatch_order_shipment(data: ShipmentInput, client: Optional[NavlungoClient] = None) -> ShipmentResult:
    if client is None and not is_navlungo_configured():
        return ShipmentResult("skipped", "NAVLUNGO_DISABLED", "Navlungo credentials are not configured.")

    if not (data.local_store_id or "").strip() and not (data.navlungo_store_id or "").strip():
        return ShipmentResult("skipped", "MISSING_STORE_ID", "Order store id could not be resolved for Navlungo shipment.")

    if not (data.shipping_address or "").strip():
        return ShipmentResult(
            "skipped", "MISSING_RECEIVER_ADDRESS", "Shipping address is required to create Navlungo shipment."
        )

    receiver_phone = (
        normalize_phone(data.receiver_phone)
        or normalize_phone(data.store_phone)
        or normalize_phone(data.user_phone)
        or normalize_phone(_default("receiver_phone"))
    )
    if not receiver_phone:
        return ShipmentResult("skipped", "MISSING_RECEIVER_PHONE", "Receiver phone is required for Navlungo shipment.")

    fallback_contact = (data.user_full_name or data.store_name or "Listflow Customer").strip()
    receiver_address = resolve_receiver_address(
        data, fallback_contact, normalize_country_code(_default("dest_country"), "US")
    )
    if not receiver_address:
        return ShipmentResult(
            "skipped", "MISSING_RECEIVER_ADDRESS", "Shipping address could not be parsed for Navlungo shipment."
        )

    client = client or NavlungoClient()
    try:
        store_id, provisioned = ensure_navlungo_store(client, data)
        quote_response = client.quote(store_id, build_quote_payload(data, receiver_address, receiver_phone))

        quotes = quote_response.get("quotes") or []
        selected = quotes[0] if quotes else None
        if not selected or not selected.get("quoteReference"):
            return ShipmentResult(
                "failed",
                "QUOTE_FAILED",
                "Navlungo quote response does not include a selectable quote.",
                store_id=store_id,
                search_id=quote_response.get("searchId"),
                response={"searchId": quote_response.get("searchId"), "quotes": quotes},
            )

        services = required_additional_services(selected)
        shipped = client.ship(
            store_id,
            data.order_id,
            {
                "quoteReference": selected["quoteReference"],
                "searchId": quote_response.get("searchId"),
                "selectedAdditionalServices": services,
            },
        )
    except NavlungoApiError as e:
        path = e.path or str(e.details.get("path") or "")
        is_quote = "/stores/v2/" in path and "/ship" not in path
        log.warning("navlungo %s failed for order %s: %s", path, data.order_id, e)
        return ShipmentResult(
            "failed",
            "QUOTE_FAILED" if is_quote else "SHIPMENT_FAILED",
            str(e),
            response={
                "status": e.status,
                "problemCode": e.problem_code,
                "detail": e.details.get("detail"),
                "path": path or None,
                "title": e.details.get("title"),
                "type": e.details.get("type"),
                "extensions": e.details.get("extensions"),
            },
        )
    except Exception as e:
        log.exception("navlungo shipment crashed for order %s", data.order_id)
        return ShipmentResult("failed", "UNEXPECTED_ERROR", str(e) or "Unexpected Navlungo error")

    return ShipmentResult(
        "started",
        None,
        "Navlungo shipment started successfully.",
        store_id=store_id,
        search_id=quote_response.get("searchId"),
        quote_reference=selected["quoteReference"],
        shipment_id=shipped.get("shipmentId"),
        shipment_reference=shipped.get("shipmentReference"),
        tracking_url=shipped.get("trackingUrl"),
        response={
            "selectedAdditionalServices": services,
            "cargoLabels": shipped.get("cargoLabels") or [],
            "chargeableWeight": shipped.get("chargeableWeight"),
            "storeProvisioned": provisioned,
        },
    )
