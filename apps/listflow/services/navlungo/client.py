# apps/listflow/services/navlungo/client.py

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from apps.listflow.utils.settings import settings

TOKEN_PATH = "/v1/oauth/token"
TOKEN_EXPIRY_SAFETY_WINDOW_SECONDS = 30
DEFAULT_TOKEN_TTL_SECONDS = 300
MIN_TOKEN_TTL_SECONDS = 10

_token_lock = threading.Lock()
_token_cache: Dict[str, Any] = {}


class NavlungoApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        status: int,
        problem_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        path: str = "",
    ):
        super().__init__(message)
        self.status = status
        self.problem_code = problem_code
        self.details = details or {}
        self.path = path


def is_navlungo_configured() -> bool:
    return bool(settings.NAVLUNGO_CLIENT_ID and settings.NAVLUNGO_CLIENT_SECRET)


def reset_token_cache() -> None:
    with _token_lock:
        _token_cache.clear()


def _api_error(response: requests.Response, path: str) -> NavlungoApiError:
    details: Dict[str, Any] = {}
    text = response.text or ""
    if text:
        try:
            parsed = response.json()
            details = parsed if isinstance(parsed, dict) else {"detail": text}
        except ValueError:
            details = {"detail": text}
    message = details.get("detail") or details.get("title") or f"Navlungo request failed with HTTP {response.status_code}"
    return NavlungoApiError(
        str(message),
        status=response.status_code,
        problem_code=details.get("problemCode"),
        details=details,
        path=path,
    )


class NavlungoClient:
    """
    Navlungo store/shipment REST client.

    - OAuth2 client_credentials, token cached process-wide
    - JSON in, JSON out
    - Non-2xx responses raise NavlungoApiError with the problem details
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.client_id = (client_id or settings.NAVLUNGO_CLIENT_ID or "").strip()
        self.client_secret = (client_secret or settings.NAVLUNGO_CLIENT_SECRET or "").strip()
        if not self.client_id or not self.client_secret:
            raise ValueError("Navlungo credentials are missing. Set NAVLUNGO_CLIENT_ID and NAVLUNGO_CLIENT_SECRET.")

        self.scope = (scope or settings.NAVLUNGO_SCOPE or "").strip() or None
        self.base_url = (base_url or settings.NAVLUNGO_BASE_URL).rstrip("/")
        self.timeout_seconds = (timeout_ms or settings.NAVLUNGO_TIMEOUT_MS) / 1000

    # ---------------------------------------------------------
    # Auth
    # ---------------------------------------------------------
    def _access_token(self) -> str:
        with _token_lock:
            cached = _token_cache.get(self.client_id)
            if cached and cached["expires_at"] > time.time():
                return cached["token"]

            form = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            }
            if self.scope:
                form["scope"] = self.scope

            response = requests.post(
                f"{self.base_url}{TOKEN_PATH}",
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_seconds,
            )
            if not response.ok:
                raise _api_error(response, TOKEN_PATH)

            payload = response.json() or {}
            token = str(payload.get("access_token") or "").strip()
            if not token:
                raise RuntimeError("Navlungo access token response does not include access_token")
            try:
                expires_in = float(payload.get("expires_in") or 0)
            except (TypeError, ValueError):
                expires_in = 0
            if expires_in <= 0:
                expires_in = DEFAULT_TOKEN_TTL_SECONDS

            ttl = max(expires_in - TOKEN_EXPIRY_SAFETY_WINDOW_SECONDS, MIN_TOKEN_TTL_SECONDS)
            _token_cache[self.client_id] = {"token": token, "expires_at": time.time() + ttl}
            return token

    # ---------------------------------------------------------
    # Low-level request handler
    # ---------------------------------------------------------
    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = self._access_token()
        try:
            response = requests.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                json=json,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise RuntimeError(f"Navlungo request timed out after {int(self.timeout_seconds * 1000)}ms") from e

        if not response.ok:
            raise _api_error(response, path)
        return response.json() if response.content else {}

    # ---------------------------------------------------------
    # Public API
    # ---------------------------------------------------------
    def create_store(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/stores/v1", json=payload)

    def quote(self, store_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/stores/v2/{quote(store_id, safe='')}/orders", json=payload)

    def ship(self, store_id: str, order_reference: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        path = f"/stores/v2/{quote(store_id, safe='')}/orders/{quote(order_reference, safe='')}/ship"
        return self._request("POST", path, json=payload)
