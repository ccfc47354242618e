from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

NO_STORE = {"Cache-Control": "no-store"}


def fail(message: str, status: int = 400, code: Optional[str] = None, **extra: Any) -> JSONResponse:
    """
    Route-level failure body: {"error": message, "code": code, ...extra}.
    """
    content: Dict[str, Any] = {"error": message}
    if code:
        content["code"] = code
    content.update(extra)
    return JSONResponse(status_code=status, content=content)


def no_store(content: Dict[str, Any], status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status, content=content, headers=NO_STORE)
