# apps/listflow/services/listing_queue.py
"""
Listing claim/report queue for the browser-extension worker.

The `listing` table is shared between the automation pipeline (n8n writes
rows) and the extension (claims a row, publishes it to Etsy, reports back).
Its schema is not fixed, so every read goes through alias lists and every
write only touches columns the row already has.

Nothing here is a real lock. A claim is an optimistic status update, and
rows stuck in `processing` are handed out again after a wall-clock TTL:

  - same user's own claim:   3s   (worker restarted / retried)
  - stale for anyone:        60s  (counts as pending again)
  - orphan (no claimant):    30s  (recovered to `failed`)
  - any other claimant:      2min (recovered to `failed`)
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from postgrest.exceptions import APIError

from apps.listflow.db import (
    first_row,
    is_missing_column_error,
    is_missing_table_error,
    require_supabase,
    rows_of,
)
from apps.listflow.services.scheduler.idempotency import parse_iso

log = logging.getLogger("listflow.listing_queue")

LISTING_TABLE = "listing"

PENDING_STATUSES = {
    "",
    "pending",
    "queued",
    "ready",
    "new",
    "draft",
    "todo",
    "failed",
    "error",
    "retry",
}
SUCCESS_STATUSES = {"completed", "done", "success"}

STALE_PROCESSING_TTL_MS = 60 * 1000
SELF_RETRY_PROCESSING_TTL_MS = 3 * 1000
STUCK_PROCESSING_FORCE_RECOVER_MS = 2 * 60 * 1000
ORPHAN_PROCESSING_RECOVER_MS = 30 * 1000
MAX_RECOVERIES_PER_CLAIM = 25

LOAD_PAGE_SIZE = 1000
LOAD_MAX_ROWS = 12000
PREFERRED_PAGE_SIZE = 800
PREFERRED_MAX_OFFSET = 10000

MAX_TAGS = 13
MAX_TAG_LENGTH = 20

RECOVERED_ERROR = "Recovered from stuck processing lock"
MISSING_PROOF_ERROR = "Completed without Etsy listing proof"

_LISTING_EDITOR_RE = re.compile(r"/listing-editor/", re.IGNORECASE)
_TAG_SPLIT_RE = re.compile(r"[,\n;|]+")
_SORT_LAST = float("inf")


class ListingQueueError(RuntimeError):
    pass


@dataclass(frozen=True)
class ListingIdentifier:
    column: str  # "id" | "key"
    value: str


@dataclass
class ClaimedListing:
    listing: Dict[str, Any]
    identifier: Optional[ListingIdentifier]
    listing_payload: Dict[str, Any]

    @property
    def client_id(self) -> Optional[str]:
        return read_client_id(self.listing)


@dataclass
class ListingReport:
    user_id: str
    status: str  # processing | completed | failed
    listing_id: Optional[str] = None
    listing_key: Optional[str] = None
    error: Optional[str] = None
    etsy_listing_id: Optional[str] = None
    etsy_listing_url: Optional[str] = None


@dataclass
class ReportOutcome:
    ok: bool
    reason: Optional[str] = None
    status: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


# -------------------------
# Field readers
# -------------------------

def normalize_string(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value != value:  # NaN
            return ""
        return str(value)
    if not isinstance(value, str):
        return ""
    return value.strip()


def normalize_status(value: Any) -> str:
    return normalize_string(value).lower()


def read_first_value(row: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key not in row:
            continue
        value = row[key]
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def read_first_string(row: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = normalize_string(row.get(key))
        if value:
            return value
    return None


def read_first_number(row: Dict[str, Any], keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        raw = row.get(key)
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return raw
        text = normalize_string(raw)
        if not text:
            continue
        try:
            return float(text.replace(",", ".", 1))
        except ValueError:
            continue
    return None


def parse_date_ms(value: Any) -> Optional[float]:
    parsed = parse_iso(normalize_string(value))
    return parsed.timestamp() * 1000 if parsed else None


def _now_ms(now: Optional[datetime]) -> float:
    return (now or datetime.now(timezone.utc)).timestamp() * 1000


def _iso(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def read_client_id(row: Dict[str, Any]) -> Optional[str]:
    return read_first_string(row, ["client_id", "clientId", "store_id"])


def read_user_id(row: Dict[str, Any]) -> Optional[str]:
    return read_first_string(row, ["user_id", "owner_user_id"])


def read_claimant(row: Dict[str, Any]) -> Optional[str]:
    return read_first_string(row, ["claimed_by_user_id", "claimed_by"])


def infer_identifier(row: Dict[str, Any]) -> Optional[ListingIdentifier]:
    value = read_first_string(row, ["id"])
    if value:
        return ListingIdentifier("id", value)
    value = read_first_string(row, ["key"])
    if value:
        return ListingIdentifier("key", value)
    return None


def infer_status_field(row: Dict[str, Any]) -> Optional[str]:
    if "status" in row:
        return "status"
    if "listing_status" in row:
        return "listing_status"
    return None


def _row_status(row: Dict[str, Any]) -> str:
    field_name = infer_status_field(row)
    return normalize_status(row.get(field_name)) if field_name else ""


def _claim_age_reference_ms(row: Dict[str, Any]) -> Optional[float]:
    for key in ("claimed_at", "updated_at", "processed_at", "created_at"):
        ms = parse_date_ms(row.get(key))
        if ms is not None:
            return ms
    return None


def _sort_key(row: Dict[str, Any]):
    ms = _SORT_LAST
    for key in ("created_at", "DATE", "date", "updated_at"):
        parsed = parse_date_ms(row.get(key))
        if parsed is not None:
            ms = parsed
            break
    return (ms, read_first_string(row, ["id", "key"]) or "")


def sort_oldest_first(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(rows, key=_sort_key)


def has_listing_proof(listing_id: Any, listing_url: Any) -> bool:
    """An Etsy listing id, or a listing URL that is not the editor page."""
    if normalize_string(listing_id):
        return True
    url = normalize_string(listing_url)
    return bool(url) and not _LISTING_EDITOR_RE.search(url)


def is_row_pending(row: Dict[str, Any], user_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    status_field = infer_status_field(row)
    if not status_field:
        return True

    status = normalize_status(row.get(status_field))
    if status in PENDING_STATUSES:
        return True

    # Pipelines sometimes mark rows completed before anything was published.
    if status in SUCCESS_STATUSES:
        listing_url = read_first_string(row, ["etsy_listing_url", "etsy_store_link"])
        if not has_listing_proof(read_first_string(row, ["etsy_listing_id"]), listing_url):
            return True

    if status == "processing":
        claimed_at = _claim_age_reference_ms(row)
        if claimed_at is None:
            return False
        age = _now_ms(now) - claimed_at
        claimant = read_claimant(row)
        if user_id and claimant and claimant == user_id and age > SELF_RETRY_PROCESSING_TTL_MS:
            return True
        if age > STALE_PROCESSING_TTL_MS:
            return True

    return False


def row_belongs_to_user(row: Dict[str, Any], user_id: str, allowed_client_ids: Set[str]) -> bool:
    owner = read_user_id(row)
    if owner and owner == user_id:
        return True
    client_id = read_client_id(row)
    return bool(client_id) and client_id in allowed_client_ids


# -------------------------
# Update payloads (only columns the row has)
# -------------------------

def _add_if_present(row: Dict[str, Any], key: str, value: Any, target: Dict[str, Any]) -> None:
    if key in row:
        target[key] = value


def build_claim_payload(row: Dict[str, Any], user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    ts = _iso(now)
    payload: Dict[str, Any] = {}
    status_field = infer_status_field(row)
    if status_field:
        payload[status_field] = "processing"
    _add_if_present(row, "updated_at", ts, payload)
    _add_if_present(row, "claimed_at", ts, payload)
    _add_if_present(row, "claimed_by_user_id", user_id, payload)
    _add_if_present(row, "claimed_by", user_id, payload)
    _add_if_present(row, "last_error", None, payload)
    _add_if_present(row, "error", None, payload)
    return payload


def build_recovery_payload(row: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    ts = _iso(now)
    payload: Dict[str, Any] = {}
    status_field = infer_status_field(row)
    if status_field:
        payload[status_field] = "failed"
    _add_if_present(row, "updated_at", ts, payload)
    _add_if_present(row, "processed_at", ts, payload)
    _add_if_present(row, "claimed_at", None, payload)
    _add_if_present(row, "claimed_by_user_id", None, payload)
    _add_if_present(row, "claimed_by", None, payload)
    _add_if_present(row, "last_error", RECOVERED_ERROR, payload)
    _add_if_present(row, "error", RECOVERED_ERROR, payload)
    return payload


def build_report_payload(
    row: Dict[str, Any],
    status: str,
    error: Optional[str] = None,
    etsy_listing_id: Optional[str] = None,
    etsy_listing_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    ts = _iso(now)
    payload: Dict[str, Any] = {}
    status_field = infer_status_field(row)
    if status_field:
        payload[status_field] = status
    _add_if_present(row, "updated_at", ts, payload)
    _add_if_present(row, "processed_at", ts, payload)
    _add_if_present(row, "completed_at", ts if status == "completed" else row.get("completed_at"), payload)
    _add_if_present(row, "last_error", error, payload)
    _add_if_present(row, "error", error, payload)
    _add_if_present(row, "etsy_listing_id", etsy_listing_id or row.get("etsy_listing_id"), payload)
    _add_if_present(row, "etsy_listing_url", etsy_listing_url or row.get("etsy_listing_url"), payload)
    _add_if_present(row, "etsy_store_link", etsy_listing_url or row.get("etsy_store_link"), payload)
    return payload


def _mark_recovered_in_memory(row: Dict[str, Any]) -> None:
    status_field = infer_status_field(row)
    if status_field:
        row[status_field] = "failed"
    for key in ("claimed_at", "claimed_by_user_id", "claimed_by"):
        if key in row:
            row[key] = None


# -------------------------
# Listing payload mapping
# -------------------------

def _maybe_json(text: str) -> Any:
    if text.startswith("[") and text.endswith("]"):
        try:
            return json.loads(text)
        except ValueError:
            return None
    return None


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def _normalize_tag(value: Any) -> str:
    text = normalize_string(value).strip("'\"")
    text = re.sub(r"\s+", " ", text).strip()
    return text[:MAX_TAG_LENGTH]


def parse_tag_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [tag for entry in value for tag in parse_tag_list(entry)]
    if isinstance(value, dict):
        for key in ("tags", "values", "items", "list"):
            if value.get(key) is not None:
                return parse_tag_list(value[key])
        return [tag for entry in value.values() for tag in parse_tag_list(entry)]

    text = normalize_string(value)
    if not text:
        return []
    parsed = _maybe_json(text)
    if parsed is not None:
        return parse_tag_list(parsed)
    return [t for t in (_normalize_tag(item) for item in _TAG_SPLIT_RE.split(text)) if t]


def parse_url_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return _dedupe(normalize_string(item) for item in value)
    text = normalize_string(value)
    if not text:
        return []
    parsed = _maybe_json(text)
    if isinstance(parsed, list):
        return parse_url_list(parsed)
    return _dedupe(_TAG_SPLIT_RE.split(text))


def parse_base64_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return _dedupe(normalize_string(item) for item in value)
    text = normalize_string(value)
    if not text:
        return []
    parsed = _maybe_json(text)
    if isinstance(parsed, list):
        return parse_base64_list(parsed)
    return [text]


def parse_variations(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value.strip())
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _nth(values: List[str], index: int) -> Optional[str]:
    return values[index] if len(values) > index else None


def map_listing_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a raw `listing` row into what the extension publishes."""
    tags = _dedupe(parse_tag_list(read_first_value(row, ["tags", "etiket", "tag_list", "tag_values"])))[:MAX_TAGS]
    image_urls = parse_url_list(read_first_value(row, ["images", "image_urls", "photo_urls"]))
    image_b64 = parse_base64_list(read_first_value(row, ["image_base64", "image_base64_list"]))
    price = read_first_number(row, ["price", "sale_price", "amount_usd"])
    quantity = read_first_number(row, ["quantity"])

    payload: Dict[str, Any] = {
        "listing_id": read_first_string(row, ["id"]),
        "listing_key": read_first_string(row, ["key"]),
        "client_id": read_client_id(row),
        "title": read_first_string(row, ["title", "name"]) or "",
        "description": read_first_string(row, ["description", "catalog_description"]) or "",
        "tags": tags,
        "category": read_first_string(row, ["category", "category_name"]) or "",
        "price": price if price is not None else 0,
        "quantity": quantity if quantity is not None else 1,
        "etsy_store_link": read_first_string(row, ["etsy_store_link"]),
        "variations": parse_variations(read_first_value(row, ["variations", "variation", "variants"])),
    }
    for n in (1, 2, 3):
        payload[f"image_{n}_url"] = read_first_string(row, [f"image_{n}_url", f"image_url_{n}"]) or _nth(image_urls, n - 1)
    for n in (1, 2, 3):
        payload[f"image_{n}_base64"] = read_first_string(row, [f"image_{n}_base64"]) or _nth(image_b64, n - 1)

    if isinstance(row.get("shipping_template"), dict):
        payload["shipping_template"] = row["shipping_template"]

    return payload


# -------------------------
# Loading
# -------------------------

def load_all_listing_rows(sb=None) -> List[Dict[str, Any]]:
    sb = sb or require_supabase()
    rows: List[Dict[str, Any]] = []
    start = 0
    while len(rows) < LOAD_MAX_ROWS:
        try:
            res = sb.table(LISTING_TABLE).select("*").range(start, start + LOAD_PAGE_SIZE - 1).execute()
        except APIError as e:
            raise ListingQueueError(e.message or "listing table query failed") from e
        page = rows_of(res)
        rows.extend(page)
        if len(page) < LOAD_PAGE_SIZE:
            break
        start += LOAD_PAGE_SIZE
    return rows


def load_rows_for_preferred_client(preferred_client_id: str, sb=None) -> List[Dict[str, Any]]:
    client = normalize_string(preferred_client_id)
    if not client:
        return []
    sb = sb or require_supabase()

    collected: List[Dict[str, Any]] = []
    for column in ("client_id", "store_id"):
        start = 0
        while True:
            try:
                res = (
                    sb.table(LISTING_TABLE)
                    .select("*")
                    .eq(column, client)
                    .range(start, start + PREFERRED_PAGE_SIZE - 1)
                    .execute()
                )
            except APIError as e:
                if is_missing_column_error(e, column) or is_missing_table_error(e):
                    break
                raise ListingQueueError(e.message or "listing preferred client query failed") from e
            page = rows_of(res)
            if not page:
                break
            collected.extend(page)
            if len(page) < PREFERRED_PAGE_SIZE:
                break
            start += PREFERRED_PAGE_SIZE
            if start > PREFERRED_MAX_OFFSET:
                break

    unique: Dict[str, Dict[str, Any]] = {}
    for row in collected:
        key = read_first_string(row, ["id", "key"]) or f"anon:{uuid.uuid4().hex}"
        unique.setdefault(key, row)
    return list(unique.values())


def _store_aliases(row: Dict[str, Any]) -> List[str]:
    return _dedupe(normalize_string(row.get(k)) for k in ("id", "shop_id", "store_id"))


def _is_recoverable_store_error(err: APIError) -> bool:
    if is_missing_table_error(err):
        return True
    return any(is_missing_column_error(err, c) for c in ("shop_id", "store_id", "id"))


def load_store_alias_rows(user_id: str, sb=None) -> List[Dict[str, Any]]:
    sb = sb or require_supabase()
    for select in ("id,shop_id,store_id", "id,shop_id", "id,store_id", "id"):
        try:
            res = sb.table("stores").select(select).eq("user_id", user_id).limit(2000).execute()
            return rows_of(res)
        except APIError as e:
            if not _is_recoverable_store_error(e):
                raise ListingQueueError(e.message or "stores table query failed") from e
    return []


def load_store_aliases(user_id: str, sb=None) -> Set[str]:
    aliases: Set[str] = set()
    for row in load_store_alias_rows(user_id, sb):
        aliases.update(_store_aliases(row))
    return aliases


def resolve_preferred_aliases(user_id: str, preferred_client_id: str, sb=None) -> Optional[Set[str]]:
    for row in load_store_alias_rows(user_id, sb):
        aliases = _store_aliases(row)
        if preferred_client_id in aliases:
            return set(aliases)
    return None


def _update_by_identifier(sb, identifier: ListingIdentifier, payload: Dict[str, Any]) -> None:
    if not payload:
        return
    try:
        sb.table(LISTING_TABLE).update(payload).eq(identifier.column, identifier.value).execute()
    except APIError as e:
        raise ListingQueueError(e.message or "listing update failed") from e


# -------------------------
# Claim
# -------------------------

def claim_next_listing_for_user(
    user_id: str,
    preferred_client_id: Optional[str] = None,
    force_recover: bool = False,
    now: Optional[datetime] = None,
) -> Optional[ClaimedListing]:
    """
    Picks the oldest pending listing the user may work on and marks it
    `processing`. Returns None when nothing is eligible.
    """
    sb = require_supabase()
    preferred = normalize_string(preferred_client_id)

    all_aliases = load_store_aliases(user_id, sb)
    preferred_aliases: Optional[Set[str]] = None
    if preferred:
        # An unknown store id still scopes the claim to that client id.
        preferred_aliases = resolve_preferred_aliases(user_id, preferred, sb) or {preferred}

    allowed = all_aliases | preferred_aliases if preferred_aliases else all_aliases

    rows = load_rows_for_preferred_client(preferred, sb) if preferred else []
    if not rows:
        rows = load_all_listing_rows(sb)

    def in_preferred(row: Dict[str, Any]) -> bool:
        if preferred_aliases is None:
            return True
        client_id = read_client_id(row)
        return bool(client_id) and client_id in preferred_aliases

    def pick(strict: bool) -> List[Dict[str, Any]]:
        eligible = []
        for row in rows:
            if not in_preferred(row):
                continue
            if strict or preferred_aliases is None:
                if not row_belongs_to_user(row, user_id, allowed):
                    continue
            if is_row_pending(row, user_id, now):
                eligible.append(row)
        return sort_oldest_first(eligible)

    def pick_with_fallback() -> List[Dict[str, Any]]:
        found = pick(strict=True)
        if not found and preferred_aliases:
            found = pick(strict=False)
        return found

    def recover() -> int:
        now_ms = _now_ms(now)
        candidates = []
        for row in rows:
            if normalize_status(row.get("status") or row.get("listing_status")) != "processing":
                continue
            if not in_preferred(row) or not row_belongs_to_user(row, user_id, allowed):
                continue
            reference = _claim_age_reference_ms(row)
            age = now_ms - (reference if reference is not None else now_ms)
            claimant = read_claimant(row)
            if claimant and claimant == user_id:
                stuck = age > SELF_RETRY_PROCESSING_TTL_MS
            elif not claimant:
                stuck = age > ORPHAN_PROCESSING_RECOVER_MS
            else:
                stuck = age > STUCK_PROCESSING_FORCE_RECOVER_MS
            if stuck:
                candidates.append(row)

        recovered = 0
        for row in candidates[:MAX_RECOVERIES_PER_CLAIM]:
            identifier = infer_identifier(row)
            if not identifier:
                continue
            try:
                _update_by_identifier(sb, identifier, build_recovery_payload(row, now))
            except ListingQueueError as e:
                log.warning("recovery of %s=%s failed: %s", identifier.column, identifier.value, e)
                continue
            _mark_recovered_in_memory(row)
            recovered += 1
        if recovered:
            log.info("recovered %s stuck listing(s) for user_id=%s", recovered, user_id)
        return recovered

    eligible = pick_with_fallback()

    if force_recover:
        recover()
        eligible = pick_with_fallback()

    if not eligible and recover() > 0:
        eligible = pick_with_fallback()

    if not eligible:
        return None

    listing = eligible[0]
    identifier = infer_identifier(listing)
    if identifier:
        _update_by_identifier(sb, identifier, build_claim_payload(listing, user_id, now))
        log.info("claimed listing %s=%s for user_id=%s", identifier.column, identifier.value, user_id)

    return ClaimedListing(
        listing=listing,
        identifier=identifier,
        listing_payload=map_listing_payload(listing),
    )


# -------------------------
# Report
# -------------------------

def _report_identifier(report: ListingReport) -> Optional[ListingIdentifier]:
    listing_id = normalize_string(report.listing_id)
    if listing_id:
        return ListingIdentifier("id", listing_id)
    listing_key = normalize_string(report.listing_key)
    if listing_key:
        return ListingIdentifier("key", listing_key)
    return None


def load_listing(identifier: ListingIdentifier, sb=None) -> Optional[Dict[str, Any]]:
    sb = sb or require_supabase()
    try:
        res = sb.table(LISTING_TABLE).select("*").eq(identifier.column, identifier.value).limit(1).execute()
    except APIError as e:
        raise ListingQueueError(e.message or "listing lookup failed") from e
    return first_row(res)


def apply_listing_job_report(report: ListingReport, now: Optional[datetime] = None) -> ReportOutcome:
    identifier = _report_identifier(report)
    if not identifier:
        return ReportOutcome(ok=False, reason="identifier_missing")

    sb = require_supabase()
    row = load_listing(identifier, sb)
    if not row:
        return ReportOutcome(ok=False, reason="listing_not_found")

    allowed = load_store_aliases(report.user_id, sb)
    if not row_belongs_to_user(row, report.user_id, allowed):
        return ReportOutcome(ok=False, reason="not_owner")

    status = report.status
    error = report.error or None
    if status == "completed" and not has_listing_proof(report.etsy_listing_id, report.etsy_listing_url):
        status = "failed"
        error = error or MISSING_PROOF_ERROR

    payload = build_report_payload(
        row,
        status=status,
        error=error,
        etsy_listing_id=normalize_string(report.etsy_listing_id) or None,
        etsy_listing_url=normalize_string(report.etsy_listing_url) or None,
        now=now,
    )
    _update_by_identifier(sb, identifier, payload)
    log.info("listing %s=%s reported %s", identifier.column, identifier.value, status)
    return ReportOutcome(ok=True, status=status, payload=payload)
