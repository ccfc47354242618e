# apps/listflow/services/n8n.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

log = logging.getLogger("listflow.n8n")

TIMEOUT_SECONDS = 20


@dataclass
class N8nDispatchResult:
    ok: bool
    status: int
    body: str
    url: str
    method: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_method(value: Any) -> str:
    method = value.strip().upper() if isinstance(value, str) else "POST"
    return "GET" if method == "GET" else "POST"


def normalize_headers(headers: Any) -> Dict[str, str]:
    """Keeps string keys with string, number or bool values."""
    if not isinstance(headers, dict):
        return {}
    out: Dict[str, str] = {}
    for key, value in headers.items():
        if not isinstance(key, str) or not key.strip():
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            out[key] = str(value)
    return out


def dispatch_n8n_trigger(
    url: str,
    payload: Dict[str, Any],
    idempotency_key: str,
    method: str = "POST",
    headers: Optional[Dict[str, Any]] = None,
    triggered_at: Optional[str] = None,
) -> N8nDispatchResult:
    """
    Fires an automation webhook. Network failures come back as
    ok=False / status=0 so callers can record them like any other failure.
    """
    target = (url or "").strip()
    if not target:
        raise ValueError("Webhook target URL is required.")

    final_method = normalize_method(method)
    triggered_at = triggered_at or datetime.now(timezone.utc).isoformat()

    request_headers: Dict[str, str] = {}
    if final_method == "POST":
        request_headers["Content-Type"] = "application/json"
    request_headers.update(normalize_headers(headers))
    request_headers["x-listflow-idempotency-key"] = idempotency_key
    request_headers["x-listflow-triggered-at"] = triggered_at

    try:
        response = requests.request(
            method=final_method,
            url=target,
            headers=request_headers,
            json=payload if final_method == "POST" else None,
            timeout=TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        log.warning("n8n dispatch to %s failed: %s", target, e)
        return N8nDispatchResult(ok=False, status=0, body=str(e), url=target, method=final_method)

    log.info("n8n dispatch %s %s -> %s", final_method, target, response.status_code)
    return N8nDispatchResult(
        ok=response.ok,
        status=response.status_code,
        body=response.text,
        url=target,
        method=final_method,
    )
