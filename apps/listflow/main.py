# apps/listflow/main.py
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.listflow.flags import request_logging_enabled, scheduler_enabled
from apps.listflow.routes.admin_extension_logs import router as admin_extension_logs_router
from apps.listflow.routes.admin_stores import router as admin_stores_router
from apps.listflow.routes.admin_subscriptions import router as admin_subscriptions_router
from apps.listflow.routes.admin_webhooks import router as admin_webhooks_router
from apps.listflow.routes.extension import router as extension_router
from apps.listflow.routes.health import router as health_router
from apps.listflow.routes.orders import router as orders_router
from apps.listflow.routes.scheduler import router as scheduler_router
from apps.listflow.routes.settings import router as settings_router
from apps.listflow.routes.stores import router as stores_router
from apps.listflow.routes.stripe_webhook import router as stripe_router
from apps.listflow.utils.access_log import access_log_middleware
from apps.listflow.utils.errors import install_error_handlers
from apps.listflow.utils.keepalive import start_background_jobs
from apps.listflow.utils.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("listflow.main")

app = FastAPI(
    title="Listflow",
    version=settings.LISTFLOW_VERSION,
    description="Etsy listing automation: extension queue, orders, billing and scheduler",
)

# -------------------------------------------------------------------
# Error handling (stable envelopes, no stack leaks)
# -------------------------------------------------------------------
install_error_handlers(app)

# -------------------------------------------------------------------
# CORS
# -------------------------------------------------------------------
if settings.CORS_MODE == "allowlist":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

# -------------------------------------------------------------------
# Access logging
# -------------------------------------------------------------------
if request_logging_enabled():
    app.middleware("http")(access_log_middleware)

# -------------------------------------------------------------------
# Routers
# -------------------------------------------------------------------
ROUTERS = (
    health_router,
    extension_router,
    settings_router,
    stores_router,
    orders_router,
    scheduler_router,
    stripe_router,
    admin_webhooks_router,
    admin_subscriptions_router,
    admin_stores_router,
    admin_extension_logs_router,
)
for router in ROUTERS:
    app.include_router(router)


# -------------------------------------------------------------------
# Root
# -------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "status": "Listflow Online",
        "version": settings.LISTFLOW_VERSION,
        "routes": sorted({r.prefix for r in ROUTERS}),
    }


# -------------------------------------------------------------------
# Background jobs (keepalive + optional in-process scheduler tick)
# -------------------------------------------------------------------
scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def startup_event():
    if not scheduler_enabled():
        log.info("Listflow starting, background jobs disabled")
        return
    start_background_jobs(scheduler)
    scheduler.start()
    log.info("Listflow starting, background jobs running")


@app.on_event("shutdown")
async def shutdown_event():
    if scheduler.running:
        scheduler.shutdown(wait=False)
