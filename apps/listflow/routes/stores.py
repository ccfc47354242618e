from typing import Any, Dict

from fastapi import APIRouter, Depends

from apps.listflow.services.auth import require_user
from apps.listflow.services.store_quota import load_user_store_quota
from apps.listflow.utils.envelope import no_store

router = APIRouter(prefix="/api/stores", tags=["stores"])


@router.get("/quota")
def store_quota(user: Dict[str, Any] = Depends(require_user)):
    return no_store(load_user_store_quota(user["id"]))
