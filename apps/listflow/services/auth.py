# apps/listflow/services/auth.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, Request
from postgrest.exceptions import APIError

from apps.listflow.db import first_row, get_supabase
from apps.listflow.utils.settings import settings

log = logging.getLogger("listflow.auth")

ACCESS_TOKEN_COOKIE = "lf_access_token"


# -------------------------
# Token extraction
# -------------------------

def read_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization") or ""
    if not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def read_access_token(request: Request) -> Optional[str]:
    """Session cookie first, then the Authorization header."""
    cookie = (request.cookies.get(ACCESS_TOKEN_COOKIE) or "").strip()
    if cookie:
        return cookie
    return read_bearer_token(request)


# -------------------------
# User / profile lookup
# -------------------------

def _user_from_auth_api(token: str) -> Optional[Dict[str, Any]]:
    if not settings.SUPABASE_URL:
        return None
    apikey = settings.SUPABASE_ANON_KEY or settings.SUPABASE_SERVICE_ROLE_KEY
    if not apikey:
        return None
    try:
        res = httpx.get(
            f"{settings.SUPABASE_URL}/auth/v1/user",
            headers={"apikey": apikey, "Authorization": f"Bearer {token}"},
            timeout=10.0,
        )
    except httpx.HTTPError as e:
        log.warning("auth user lookup failed: %s", e)
        return None
    if res.status_code >= 400:
        return None
    body = res.json() or {}
    if not body.get("id"):
        return None
    return {"id": body["id"], "email": body.get("email")}


def get_user_from_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Resolves a Supabase access token to {"id", "email"}.
    Uses the admin client first and the public auth endpoint as fallback.
    """
    if not token:
        return None

    sb = get_supabase()
    if sb:
        try:
            res = sb.auth.get_user(token)
            user = getattr(res, "user", None)
            if user and getattr(user, "id", None):
                return {"id": str(user.id), "email": getattr(user, "email", None)}
        except Exception as e:
            log.info("admin get_user rejected token, trying auth endpoint: %s", e)

    return _user_from_auth_api(token)


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    sb = get_supabase()
    if not sb:
        return None
    try:
        res = sb.table("profiles").select("user_id,role,email").eq("user_id", user_id).limit(1).execute()
    except APIError as e:
        log.warning("profile lookup failed for user_id=%s: %s", user_id, e.message)
        return None
    return first_row(res)


def is_admin_role(role: Optional[str]) -> bool:
    return (role or "").strip().lower() == "admin"


# -------------------------
# FastAPI dependencies
# -------------------------

def _unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail={"error": "Unauthorized"})


def require_user(request: Request) -> Dict[str, Any]:
    token = read_access_token(request)
    if not token:
        raise _unauthorized()
    user = get_user_from_access_token(token)
    if not user:
        raise _unauthorized()
    return user


def require_extension_user(request: Request) -> Dict[str, Any]:
    token = read_bearer_token(request)
    if not token:
        raise _unauthorized()
    user = get_user_from_access_token(token)
    if not user:
        raise _unauthorized()
    return user


def require_admin(request: Request) -> Dict[str, Any]:
    """
    Admin surfaces answer 404 to everyone else so they are not discoverable.
    """
    not_found = HTTPException(status_code=404, detail={"error": "Not Found"})
    token = read_access_token(request)
    if not token:
        raise not_found
    user = get_user_from_access_token(token)
    if not user:
        raise not_found
    profile = get_profile(user["id"])
    if not profile or not is_admin_role(profile.get("role")):
        raise not_found
    return {**user, "role": profile.get("role")}
