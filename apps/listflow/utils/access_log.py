import logging
import time
from typing import Any, Dict

from fastapi import Request

from apps.listflow.services.webhooks.redaction import REDACTED, redact_sensitive

log = logging.getLogger("listflow.access")

# Probed every few minutes by uptime checks and the keepalive job.
QUIET_PREFIXES = ("/health",)
EXTRA_SENSITIVE = {"stripe-signature", "x-cron-secret"}


def _scrub(values: Dict[str, str]) -> Dict[str, Any]:
    out = redact_sensitive(values)
    return {k: (REDACTED if k.lower() in EXTRA_SENSITIVE else v) for k, v in out.items()}


def access_entry(request: Request, status_code: int, duration_ms: int) -> Dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "query": _scrub(dict(request.query_params)),
        "status": status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "headers": _scrub(dict(request.headers)),
    }


async def access_log_middleware(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    if request.url.path.startswith(QUIET_PREFIXES):
        return response
    entry = access_entry(request, response.status_code, int((time.monotonic() - start) * 1000))
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    log.log(level, "%s %s -> %s (%sms) %s", entry["method"], entry["path"], entry["status"], entry["duration_ms"], entry)
    return response
