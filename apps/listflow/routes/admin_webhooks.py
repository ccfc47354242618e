# apps/listflow/routes/admin_webhooks.py
import logging
import time
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from apps.listflow.db import require_supabase
from apps.listflow.services.auth import require_admin
from apps.listflow.services.cron_job_org import (
    CronJobOrgError,
    list_jobs,
    load_direct_automation_cron_jobs,
    sync_scheduler_cron_job_lifecycle,
)
from apps.listflow.services.n8n import normalize_headers, normalize_method
from apps.listflow.services.webhooks.configs import (
    WebhookConfigConflict,
    WebhookConfigError,
    create_webhook_config,
    delete_webhook_config,
    list_automation_configs,
    parse_config_body,
    parse_config_patch,
    update_webhook_config,
)
from apps.listflow.services.webhooks import cron_tests
from apps.listflow.services.webhooks.logs import insert_webhook_log
from apps.listflow.services.webhooks.overview import load_overview
from apps.listflow.services.webhooks.redaction import redact_sensitive
from apps.listflow.utils.envelope import fail

log = logging.getLogger("listflow.admin_webhooks")

router = APIRouter(prefix="/api/admin", tags=["admin-webhooks"])

CONSOLE_TIMEOUT_SECONDS = 30


# ===== Pydantic models =====
class ConsoleRequest(BaseModel):
    url: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    payload: Optional[Any] = None
    saveConfig: bool = False
    configName: Optional[str] = None
    configDescription: Optional[str] = None
    configProductId: Optional[str] = None


def _config_error(e: Exception):
    if isinstance(e, WebhookConfigConflict):
        return fail("A webhook config with the same values already exists.", 409, "WEBHOOK_CONFIG_CONFLICT")
    return fail(str(e), 400)


# ===== Configs =====

@router.get("/webhooks/configs")
def get_configs(admin: Dict[str, Any] = Depends(require_admin)):
    return {"rows": list_automation_configs()}


@router.post("/webhooks/configs")
def post_config(body: Dict[str, Any] = Body(default_factory=dict), admin: Dict[str, Any] = Depends(require_admin)):
    sb = require_supabase()
    try:
        row = create_webhook_config(parse_config_body(body, sb), sb)
    except (WebhookConfigError, WebhookConfigConflict) as e:
        return _config_error(e)
    return {"row": row}


@router.patch("/webhooks/configs/{config_id}")
def patch_config(
    config_id: str,
    body: Dict[str, Any] = Body(default_factory=dict),
    admin: Dict[str, Any] = Depends(require_admin),
):
    sb = require_supabase()
    try:
        row = update_webhook_config(config_id, parse_config_patch(body, sb), sb)
    except (WebhookConfigError, WebhookConfigConflict) as e:
        return _config_error(e)
    if not row:
        return fail("Webhook config not found.", 404, "WEBHOOK_NOT_FOUND")
    return {"row": row}


@router.delete("/webhooks/configs/{config_id}")
def remove_config(config_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    delete_webhook_config(config_id)
    return {"success": True}


# ===== Console =====

@router.post("/webhook-console/execute")
def execute_console(body: ConsoleRequest, admin: Dict[str, Any] = Depends(require_admin)):
    """
    Sends an ad-hoc request to a webhook URL and records it in webhook_logs.
    With `saveConfig`, the same target is stored as an automation config.
    """
    url = (body.url or "").strip()
    if not url or not body.method:
        return fail("url and method are required", 400)

    method = normalize_method(body.method)
    headers = normalize_headers(body.headers)
    payload = body.payload if body.payload is not None else {}

    if body.saveConfig:
        if not (body.configName or "").strip():
            return fail("configName is required when saveConfig=true", 400)
        if not (body.configProductId or "").strip():
            return fail("configProductId is required when saveConfig=true", 400)

    started = time.monotonic()
    try:
        response = requests.request(
            method,
            url,
            headers=headers,
            json=payload if method == "POST" else None,
            timeout=CONSOLE_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        duration = int((time.monotonic() - started) * 1000)
        insert_webhook_log(
            request_url=url,
            request_method=method,
            request_headers=headers,
            request_body=payload if isinstance(payload, dict) else {"payload": payload},
            response_status=500,
            response_body=str(e),
            duration_ms=duration,
            created_by=admin["id"],
        )
        log.warning("webhook console request to %s failed: %s", url, e)
        return fail(str(e) or "Webhook request failed", 500)

    duration = int((time.monotonic() - started) * 1000)
    insert_webhook_log(
        request_url=url,
        request_method=method,
        request_headers=headers,
        request_body=payload if isinstance(payload, dict) else {"payload": payload},
        response_status=response.status_code,
        response_body=response.text,
        duration_ms=duration,
        created_by=admin["id"],
    )

    saved_config = None
    if body.saveConfig:
        try:
            saved_config = create_webhook_config(
                {
                    "name": body.configName.strip(),
                    "description": (body.configDescription or "").strip() or None,
                    "target_url": url,
                    "method": method,
                    "headers": redact_sensitive(headers),
                    "enabled": True,
                    "scope": "automation",
                    "product_id": body.configProductId.strip(),
                }
            )
        except WebhookConfigConflict as e:
            return _config_error(e)

    return {
        "result": {
            "status": response.status_code,
            "duration": duration,
            "body": response.text,
            "headers": dict(response.headers),
        },
        "savedConfig": saved_config,
    }


# ===== cron-job.org =====

@router.post("/webhooks/cron/bootstrap")
def cron_bootstrap(admin: Dict[str, Any] = Depends(require_admin)):
    result = sync_scheduler_cron_job_lifecycle(force=True)
    if not result.get("ok") and result.get("status") == "error":
        return JSONResponse(status_code=500, content=result)
    return result


@router.get("/webhooks/cron/jobs")
def cron_jobs(admin: Dict[str, Any] = Depends(require_admin)):
    try:
        jobs = list_jobs()
    except CronJobOrgError as e:
        if e.rate_limited:
            status = 429
        else:
            status = 502 if e.status else 500
        return fail(str(e), status, "CRON_JOB_ORG_ERROR")
    return {"jobs": jobs}


@router.get("/webhooks/cron/direct-jobs")
def cron_direct_jobs(force: bool = False, admin: Dict[str, Any] = Depends(require_admin)):
    try:
        rows = load_direct_automation_cron_jobs(force=force)
    except CronJobOrgError as e:
        if e.rate_limited:
            return {"rows": [], "rateLimited": True, "message": str(e)}
        return fail(str(e), 502 if e.status else 500, "CRON_JOB_ORG_ERROR")
    return {"rows": rows}


# ===== Overview =====

@router.get("/webhooks/overview")
def webhooks_overview(admin: Dict[str, Any] = Depends(require_admin)):
    return load_overview()


# ===== Cron tests =====

_CRON_TEST_NOOP = {"ok": True, "status": "noop", "message": "Cron test webhooks run from the scheduler tick."}


@router.get("/webhooks/cron-tests")
def get_cron_tests(admin: Dict[str, Any] = Depends(require_admin)):
    return {"rows": cron_tests.list_rows()}


@router.post("/webhooks/cron-tests")
def post_cron_test(body: Dict[str, Any] = Body(default_factory=dict), admin: Dict[str, Any] = Depends(require_admin)):
    try:
        target_url = cron_tests.parse_target_url(body.get("targetUrl") or body.get("target_url"))
        created = cron_tests.create_cron_test_config(
            body.get("name"),
            target_url,
            method=cron_tests.parse_method(body.get("method")),
            headers=normalize_headers(body.get("headers")),
            enabled=body.get("enabled") is not False,
        )
    except cron_tests.CronTestError as e:
        return fail(str(e), 400)
    return {"row": cron_tests.to_api_row(created), "cronSync": _CRON_TEST_NOOP}


@router.patch("/webhooks/cron-tests/{config_id}")
def patch_cron_test(
    config_id: str,
    body: Dict[str, Any] = Body(default_factory=dict),
    admin: Dict[str, Any] = Depends(require_admin),
):
    if not cron_tests.get_cron_test_config(config_id):
        return fail("Cron test webhook not found.", 404, "CRON_TEST_NOT_FOUND")
    try:
        patch = cron_tests.parse_patch(body)
        if not patch:
            return fail("No changes provided.", 400)
        updated = cron_tests.update_cron_test_config(config_id, patch)
    except cron_tests.CronTestError as e:
        return fail(str(e), 400)
    return {"row": cron_tests.to_api_row(updated), "cronSync": _CRON_TEST_NOOP}


@router.delete("/webhooks/cron-tests/{config_id}")
def remove_cron_test(config_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    if not cron_tests.get_cron_test_config(config_id):
        return fail("Cron test webhook not found.", 404, "CRON_TEST_NOT_FOUND")
    cron_tests.delete_cron_test_config(config_id)
    return {"success": True, "cronSync": _CRON_TEST_NOOP}


@router.post("/webhooks/cron-tests/{config_id}/trigger")
def trigger_cron_test(config_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    config = cron_tests.get_cron_test_config(config_id)
    if not config:
        return fail("Cron test webhook not found.", 404, "CRON_TEST_NOT_FOUND")
    return cron_tests.dispatch_cron_test(config, cron_tests.CRON_TEST_MANUAL)
