from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from apps.listflow.db import require_supabase, rows_of
from apps.listflow.services.auth import require_admin

router = APIRouter(prefix="/api/admin/extension-logs", tags=["admin-extension-logs"])

PAGE_SIZE = 50


@router.get("")
def list_extension_logs(
    level: Optional[str] = None,
    store_name: Optional[str] = None,
    event: Optional[str] = None,
    offset: int = Query(0),
    admin: Dict[str, Any] = Depends(require_admin),
):
    offset = max(offset, 0)
    query = (
        require_supabase()
        .table("extension_logs")
        .select("id,user_id,store_id,store_name,level,event,message,metadata,created_at")
        .order("created_at", desc=True)
        .range(offset, offset + PAGE_SIZE - 1)
    )
    if level and level != "all":
        query = query.eq("level", level)
    if store_name:
        query = query.ilike("store_name", f"%{store_name}%")
    if event:
        query = query.ilike("event", f"%{event}%")

    logs = rows_of(query.execute())
    return {"logs": logs, "has_more": len(logs) == PAGE_SIZE}
