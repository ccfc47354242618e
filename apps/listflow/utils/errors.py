# apps/listflow/utils/errors.py
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError

from apps.listflow.db import SupabaseNotConfigured

log = logging.getLogger("listflow.errors")

_STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
    502: "upstream_error",
}


def _envelope(status: int, message: str, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "error": code or _STATUS_CODES.get(status, "error"),
            "message": message,
        },
    )


def install_error_handlers(app: FastAPI) -> None:
    """
    Stable JSON envelopes for every failure. Stack traces stay in the logs.
    """

    @app.exception_handler(HTTPException)
    async def _http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            # Routes that already shaped a body ({"error", "code"}) keep it.
            return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)
        return _envelope(exc.status_code, str(detail))

    @app.exception_handler(RequestValidationError)
    async def _validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", []) if p != "body")
        msg = first.get("msg", "Invalid request")
        return _envelope(422, f"{loc}: {msg}" if loc else msg)

    @app.exception_handler(SupabaseNotConfigured)
    async def _supabase_missing(request: Request, exc: SupabaseNotConfigured):
        log.error("Supabase not configured for %s", request.url.path)
        return _envelope(500, "Supabase not configured", "supabase_not_configured")

    @app.exception_handler(APIError)
    async def _postgrest(request: Request, exc: APIError):
        log.error("PostgREST error on %s: %s (code=%s)", request.url.path, exc.message, exc.code)
        return _envelope(500, exc.message or "Database error", "database_error")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _envelope(500, "Internal server error")
