# apps/listflow/routes/scheduler.py
"""
Scheduler tick endpoint hit by cron-job.org (or anything holding CRON_SECRET).
Every call, authorized or not, leaves a CRON_TICK row in webhook_logs.
"""
import logging
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from apps.listflow.db import get_supabase, utcnow_iso
from apps.listflow.services.cron_job_org import is_direct_automation_mode
from apps.listflow.services.scheduler.engine import TickSummary, run_scheduler_tick
from apps.listflow.services.webhooks.cron_tests import run_cron_test_tick
from apps.listflow.services.webhooks.logs import CRON_TICK, insert_webhook_log
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.scheduler")

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])

_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
_REDACTED_QUERY_KEYS = ("cron_secret", "secret", "token")
_UA_SOURCES = ("cron-job.org", "vercel", "postman", "curl")


# -------------------------
# Helpers
# -------------------------

def _normalize_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    # Some cron providers turn "+" into a space in header/query fields.
    return value.strip().replace(" ", "+") or None


def _bearer(value: Optional[str]) -> Optional[str]:
    match = _BEARER.match(value or "")
    return match.group(1).strip() if match else None


def is_authorized(request: Request) -> bool:
    secret = settings.CRON_SECRET
    if not secret:
        return False
    query = request.query_params
    candidates = [
        _normalize_token(_bearer(request.headers.get("authorization"))),
        _normalize_token(request.headers.get("x-cron-secret")),
        _normalize_token(query.get("cron_secret") or query.get("secret")),
    ]
    return any(token == secret for token in candidates if token)


def detect_source(request: Request) -> str:
    explicit = (request.headers.get("x-listflow-tick-source") or "").strip()
    if explicit:
        return explicit.lower()
    ua = (request.headers.get("user-agent") or "").lower()
    for source in _UA_SOURCES:
        if source in ua:
            return source
    return "unknown"


def _sanitized_query(request: Request) -> Optional[str]:
    params = [
        (key, "[REDACTED]" if key in _REDACTED_QUERY_KEYS else value)
        for key, value in request.query_params.multi_items()
    ]
    return f"?{urlencode(params)}" if params else None


def _tick_headers(request: Request) -> Dict[str, Any]:
    h = request.headers
    return {
        "user_agent": h.get("user-agent"),
        "x_forwarded_for": h.get("x-forwarded-for"),
        "x_real_ip": h.get("x-real-ip"),
        "cf_connecting_ip": h.get("cf-connecting-ip"),
        "cf_ray": h.get("cf-ray"),
        "x_listflow_tick_source": h.get("x-listflow-tick-source"),
        "authorization": "[REDACTED]" if h.get("authorization") else None,
        "x_cron_secret": "[REDACTED]" if h.get("x-cron-secret") else None,
    }


def _log_tick(request: Request, status: int, payload: Dict[str, Any], started: float, authorized: bool, source: str):
    sb = get_supabase()
    if sb is None:
        return
    try:
        insert_webhook_log(
            request_url=request.url.path,
            request_method=CRON_TICK,
            request_headers=_tick_headers(request),
            request_body={
                "method": request.method,
                "source": source,
                "authorized": authorized,
                "query": _sanitized_query(request),
                "requested_at": utcnow_iso(),
            },
            response_status=status,
            response_body=payload,
            duration_ms=int((time.monotonic() - started) * 1000),
            sb=sb,
        )
    except Exception:
        log.exception("cron tick log insert failed")


def direct_mode_summary() -> TickSummary:
    return TickSummary(reason_breakdown={"direct_mode_enabled": 1})


def cron_test_section() -> Dict[str, Any]:
    try:
        return {"summary": run_cron_test_tick(), "error": None}
    except Exception as e:
        log.exception("cron test tick failed")
        return {"summary": None, "error": str(e) or "Cron test tick failed"}


# -------------------------
# Endpoint
# -------------------------

@router.api_route("/tick", methods=["GET", "POST"])
def tick(request: Request):
    started = time.monotonic()
    source = detect_source(request)
    authorized = is_authorized(request)

    if not authorized:
        payload = {"success": False, "error": "Unauthorized", "meta": {"source": source}}
        log.warning("scheduler tick rejected (source=%s)", source)
        _log_tick(request, 401, payload, started, authorized, source)
        return JSONResponse(status_code=401, content=payload)

    try:
        summary = direct_mode_summary() if is_direct_automation_mode() else run_scheduler_tick()
    except Exception as e:
        log.exception("scheduler tick failed (source=%s)", source)
        payload = {"success": False, "error": str(e) or "Scheduler failed", "meta": {"source": source}}
        _log_tick(request, 500, payload, started, authorized, source)
        return JSONResponse(status_code=500, content=payload)

    payload = {
        "success": True,
        "summary": summary.to_dict(),
        "cronTests": cron_test_section(),
        "meta": {"source": source},
    }
    _log_tick(request, 200, payload, started, authorized, source)
    return payload
