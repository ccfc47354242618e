# apps/listflow/services/etsy_page_sync.py
"""
Etsy listing-editor selector hints for the extension.

The extension probes the live Etsy page (selector hit counts per UI control
and a snapshot of visible buttons) and posts it here; the reply is an ordered
list of CSS selectors per control: observed hits first, then selectors
derived from button labels, then the built-in defaults.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

MAX_SELECTOR_LENGTH = 240
MAX_BUTTONS = 200
UI_VERSIONS = ("new-era", "old-era")

KNOWN_GROUPS = (
    "photo_upload_button",
    "image_file_input",
    "shipping_select_profile_button",
    "shipping_add_profile_button",
    "shipping_apply_button",
    "processing_add_profile_button",
    "processing_apply_button",
    "publish_primary_button",
    "publish_modal_button",
)

DEFAULT_HINTS: Dict[str, List[str]] = {
    "photo_upload_button": [
        "#field-listingImages button[data-clg-id='WtButton']",
        "#field-listingImages button.wt-btn.wt-btn--tertiary",
        "button[data-clg-id='WtButton'].wt-btn.wt-btn--tertiary",
        "button.wt-btn.wt-btn--tertiary",
    ],
    "image_file_input": [
        "#field-listingImages input[type='file'][multiple]",
        "#field-listingImages input[type='file']",
        "input#listing-photos[type='file']",
        "input[type='file'][multiple][accept*='image']",
        "input[type='file'][accept*='image']",
        "input[type='file']",
    ],
    "shipping_select_profile_button": [
        "button.wt-btn.wt-btn--secondary",
        "button[data-clg-id='WtButton'].wt-btn.wt-btn--secondary",
    ],
    "shipping_add_profile_button": [
        "button.wt-btn.wt-btn--secondary",
        "button[data-clg-id='WtButton'].wt-btn.wt-btn--secondary",
    ],
    "shipping_apply_button": [
        "button[data-testid^='apply-readiness-state']",
        "button[aria-label='apply_aria_label']",
        "button.wt-btn.wt-btn--tertiary",
    ],
    "processing_add_profile_button": ["button.wt-btn.wt-btn--secondary"],
    "processing_apply_button": [
        "button[data-testid^='apply-readiness-state']",
        "button[data-testid*='apply-readiness-state']",
        "button[aria-label='apply_aria_label']",
    ],
    "publish_primary_button": ["button[data-testid='publish']"],
    "publish_modal_button": ["button#shop-manager--listing-publish", "button[data-testid='publish']"],
}

# group -> (include terms, exclude terms) matched against button text + aria label
BUTTON_TERMS: Dict[str, tuple] = {
    "photo_upload_button": (("upload",), ("cancel", "delete")),
    "shipping_select_profile_button": (("select profile",), ("cancel",)),
    "shipping_add_profile_button": (("add profile", "create profile"), ("cancel",)),
    "shipping_apply_button": (("apply",), ("cancel", "delete")),
    "processing_add_profile_button": (("add profile",), ("shipping",)),
    "processing_apply_button": (("apply",), ("shipping", "cancel")),
    "publish_primary_button": (("publish",), ("cancel",)),
    "publish_modal_button": (("publish",), ("cancel",)),
}

_SAFE_CSS_TOKEN = re.compile(r"^[A-Za-z0-9_\-:.]+$")
_WS = re.compile(r"\s+")


@dataclass
class SelectorProbe:
    selector: str
    total: float = 0
    visible: float = 0


@dataclass
class ButtonSnapshot:
    text: Optional[str] = None
    aria_label: Optional[str] = None
    data_testid: Optional[str] = None
    id: Optional[str] = None
    class_name: Optional[str] = None


@dataclass
class PageSyncInput:
    page_url: Optional[str]
    path: Optional[str]
    ui_version: str
    selector_groups: Dict[str, List[SelectorProbe]]
    buttons: List[ButtonSnapshot] = field(default_factory=list)
    synced_at: str = ""


# -------------------------
# Parsing
# -------------------------

def _normalize_text(value: Any) -> str:
    return _WS.sub(" ", "" if value is None else str(value)).strip().lower()


def _safe_string(value: Any) -> Optional[str]:
    text = "" if value is None else str(value).strip()
    return text or None


def _safe_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return max(0, value)
    try:
        return max(0, float(str(value).strip()))
    except (TypeError, ValueError):
        return 0


def _normalize_url(value: Any) -> Optional[str]:
    text = _safe_string(value)
    if not text:
        return None
    parsed = urlparse(text)
    return text if parsed.scheme and parsed.netloc else None


def _selector_group(value: Any) -> List[SelectorProbe]:
    probes = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        selector = _safe_string(entry.get("selector"))
        if not selector or len(selector) > MAX_SELECTOR_LENGTH:
            continue
        probes.append(SelectorProbe(selector, _safe_number(entry.get("total")), _safe_number(entry.get("visible"))))
    return probes


def _buttons(value: Any) -> List[ButtonSnapshot]:
    out = []
    for entry in (value if isinstance(value, list) else [])[:MAX_BUTTONS]:
        entry = entry if isinstance(entry, dict) else {}
        out.append(
            ButtonSnapshot(
                text=_safe_string(entry.get("text")),
                aria_label=_safe_string(entry.get("aria_label")),
                data_testid=_safe_string(entry.get("data_testid")),
                id=_safe_string(entry.get("id")),
                class_name=_safe_string(entry.get("class_name")),
            )
        )
    return out


def parse_page_sync_input(payload: Any) -> PageSyncInput:
    body = payload if isinstance(payload, dict) else {}
    groups = body.get("selector_groups") if isinstance(body.get("selector_groups"), dict) else {}
    ui_version = _normalize_text(body.get("ui_version"))
    return PageSyncInput(
        page_url=_normalize_url(body.get("page_url")),
        path=_safe_string(body.get("path")),
        ui_version=ui_version if ui_version in UI_VERSIONS else "unknown",
        selector_groups={group: _selector_group(groups.get(group)) for group in KNOWN_GROUPS},
        buttons=_buttons(body.get("buttons")),
        synced_at=datetime.now(timezone.utc).isoformat(),
    )


# -------------------------
# Hints
# -------------------------

def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


def button_selector(button: ButtonSnapshot) -> Optional[str]:
    if button.data_testid and _SAFE_CSS_TOKEN.match(button.data_testid):
        return f"button[data-testid='{button.data_testid}']"
    if button.id and _SAFE_CSS_TOKEN.match(button.id):
        return f"button#{button.id}"
    return None


def button_candidates(buttons: List[ButtonSnapshot], include: Iterable[str], exclude: Iterable[str] = ()) -> List[str]:
    include = [_normalize_text(t) for t in include]
    exclude = [_normalize_text(t) for t in exclude]
    selectors = []
    for button in buttons:
        haystack = _normalize_text(f"{button.text or ''} {button.aria_label or ''}")
        if not haystack or not any(t in haystack for t in include) or any(t in haystack for t in exclude):
            continue
        selector = button_selector(button)
        if selector:
            selectors.append(selector)
    return _dedupe(selectors)


def observed_selectors(probes: List[SelectorProbe]) -> List[str]:
    """Selectors that matched anything, most visible hits first."""
    hits = [p for p in probes if p.visible > 0 or p.total > 0]
    hits.sort(key=lambda p: (p.visible, p.total), reverse=True)
    return [p.selector for p in hits]


def derive_selector_hints(data: PageSyncInput) -> Dict[str, Any]:
    group_hits: Dict[str, int] = {}
    hints: Dict[str, List[str]] = {}
    for group in KNOWN_GROUPS:
        observed = observed_selectors(data.selector_groups.get(group, []))
        group_hits[group] = len(observed)
        include, exclude = BUTTON_TERMS.get(group, ((), ()))
        from_buttons = button_candidates(data.buttons, include, exclude) if include else []
        hints[group] = _dedupe([*observed, *from_buttons, *DEFAULT_HINTS[group]])

    populated = sum(1 for selectors in hints.values() if selectors)
    return {
        "hints": hints,
        "confidence": round(populated / len(hints), 2),
        "ui_version": data.ui_version or "unknown",
        "debug": {"page_url": data.page_url, "selector_group_hits": group_hits},
    }


def _primitive(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, default=str)


def payload_preview(data: PageSyncInput) -> Dict[str, Any]:
    """Flat echo of what was accepted; nested values are serialized to strings."""
    preview = {
        "page_url": data.page_url,
        "path": data.path,
        "selector_groups": {group: len(rows) for group, rows in data.selector_groups.items()},
        "buttons_count": len(data.buttons),
    }
    return {key: _primitive(value) for key, value in preview.items()}
