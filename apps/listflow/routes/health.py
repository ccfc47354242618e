from fastapi import APIRouter
from fastapi.responses import JSONResponse

from apps.listflow.utils.keepalive import supabase_rest_ping


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_root():
    return {"ok": True}


@router.get("/supabase")
async def health_supabase():
    result = await supabase_rest_ping()
    return JSONResponse(status_code=200 if result["ok"] else 503, content=result)
