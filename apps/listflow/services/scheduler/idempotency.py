from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

PLAN_WINDOW_HOURS = {
    "turbo": 2,
    "pro": 4,
    "standard": 8,
}
DEFAULT_WINDOW_HOURS = 8

_NUMERIC = re.compile(r"^\d+$")
_FRACTION = re.compile(r"\.(\d+)")


def get_plan_window_hours(plan: Optional[str]) -> int:
    return PLAN_WINDOW_HOURS.get((plan or "").lower(), DEFAULT_WINDOW_HOURS)


def to_iso_z(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 as Postgres and JavaScript write it: Z or offset suffix, any
    number of fractional digits. Naive values are taken as UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_scheduled_idempotency_key(subscription_id: str, store_id: str, plan: str, slot_due_iso: str) -> str:
    return f"scheduled:{subscription_id}:{store_id}:{plan}:{slot_due_iso}"


def extract_scheduled_slot_due_iso(key: Optional[str]) -> Optional[str]:
    """
    Slot due time embedded in a scheduled key. Legacy keys carried a
    numeric bucket instead and yield None.
    """
    if not key or not key.startswith("scheduled:"):
        return None
    parts = key.split(":")
    if len(parts) < 5:
        return None
    candidate = ":".join(parts[4:])
    if _NUMERIC.match(candidate):
        return None
    parsed = parse_iso(candidate)
    return to_iso_z(parsed) if parsed else None


def build_manual_switch_idempotency_key(store_id: str, webhook_config_id: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    minute_bucket = int(now.timestamp() // 60)
    return f"manual_switch:{store_id}:{webhook_config_id}:{minute_bucket}"


def build_activation_idempotency_key(subscription_id: str, store_id: str, current_period_end: Optional[str]) -> str:
    parsed = parse_iso(current_period_end)
    bucket = to_iso_z(parsed) if parsed else "no_period"
    return f"activation:{subscription_id}:{store_id}:{bucket}"


def store_id_from_key(key: Optional[str]) -> Optional[str]:
    """Store id encoded in any of the three key formats."""
    if not key:
        return None
    parts = key.split(":")
    if key.startswith("scheduled:") and len(parts) >= 5:
        return parts[2]
    if key.startswith("manual_switch:") and len(parts) >= 4:
        return parts[1]
    if key.startswith("activation:") and len(parts) >= 4:
        return parts[2]
    return None
