from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from apps.listflow.services.admin.automation_switch import AutomationSwitchError, switch_store_automation
from apps.listflow.services.auth import require_admin
from apps.listflow.utils.envelope import fail

router = APIRouter(prefix="/api/admin/stores", tags=["admin-stores"])


# ===== Pydantic models =====
class AutomationSwitchBody(BaseModel):
    webhookConfigId: Optional[str] = None
    targetWebhookConfigId: Optional[str] = None


# ===== Endpoints =====

@router.post("/{store_id}/automation-switch")
def automation_switch(
    store_id: str,
    body: Optional[AutomationSwitchBody] = None,
    admin: Dict[str, Any] = Depends(require_admin),
):
    body = body or AutomationSwitchBody()
    webhook_config_id = (body.webhookConfigId or body.targetWebhookConfigId or "").strip()
    if not webhook_config_id:
        return fail("webhookConfigId is required", 400)

    try:
        return switch_store_automation(store_id, webhook_config_id, admin)
    except AutomationSwitchError as e:
        return fail(e.message, e.status, e.code, **e.extra)
