# apps/listflow/utils/keepalive.py

import logging
from typing import Any, Dict

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi.concurrency import run_in_threadpool

from apps.listflow.services.scheduler.engine import run_scheduler_tick
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.keepalive")

# --------------------------------------------------------
# Supabase REST keepalive
# --------------------------------------------------------


async def supabase_rest_ping() -> Dict[str, Any]:
    """
    Lightweight REST call against the Supabase project (no table dependency).
    Returns {"ok", "status"}; status 0 means the request never completed.
    """
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        log.warning("[KEEPALIVE] Supabase env vars missing, skipping Supabase ping")
        return {"ok": False, "status": 0, "error": "Supabase not configured"}

    headers = {
        "apikey": settings.SUPABASE_SERVICE_ROLE_KEY,
        "Authorization": f"Bearer {settings.SUPABASE_SERVICE_ROLE_KEY}",
    }
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            res = await client.get(f"{settings.SUPABASE_URL}/rest/v1/", headers=headers)
    except httpx.HTTPError as e:
        log.error("[KEEPALIVE] Supabase REST error: %s", e)
        return {"ok": False, "status": 0, "error": str(e)}

    if res.status_code < 400:
        log.debug("[KEEPALIVE] Supabase REST ping OK")
    else:
        log.warning("[KEEPALIVE] Supabase REST ping failed (%s)", res.status_code)
    return {"ok": res.status_code < 400, "status": res.status_code}


# --------------------------------------------------------
# In-process scheduler tick
# --------------------------------------------------------


async def scheduler_tick_job() -> None:
    try:
        summary = await run_in_threadpool(run_scheduler_tick)
    except Exception:
        log.exception("[SCHEDULER] in-process tick failed")
        return
    log.info("[SCHEDULER] in-process tick: %s", summary.to_dict())


def start_background_jobs(scheduler: AsyncIOScheduler) -> None:
    interval = settings.KEEPALIVE_INTERVAL_SECONDS
    scheduler.add_job(
        supabase_rest_ping,
        "interval",
        seconds=interval,
        id="supabase_rest_keepalive",
        replace_existing=True,
    )
    log.info("[KEEPALIVE] Supabase REST ping every %ss", interval)

    tick_seconds = settings.SCHEDULER_INPROCESS_TICK_SECONDS
    if tick_seconds and settings.AUTOMATION_DISPATCH_MODE == "scheduler":
        scheduler.add_job(
            scheduler_tick_job,
            "interval",
            seconds=tick_seconds,
            id="scheduler_inprocess_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        log.info("[SCHEDULER] in-process tick every %ss", tick_seconds)
