# apps/listflow/utils/settings.py
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


class Settings:
    """
    Environment-backed settings. Every attribute is read on access so
    changes to os.environ (tests, reloads) are picked up without restarts.
    """

    # -------------------------
    # App
    # -------------------------
    @property
    def LISTFLOW_VERSION(self) -> str:
        return _env("LISTFLOW_VERSION", "1.0.0")

    @property
    def LOG_LEVEL(self) -> str:
        return (_env("LOG_LEVEL", "INFO") or "INFO").upper()

    @property
    def CORS_MODE(self) -> str:
        return (_env("CORS_MODE", "off") or "off").lower()

    @property
    def CORS_ALLOW_ORIGINS(self) -> List[str]:
        raw = _env("CORS_ALLOW_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def APP_URL(self) -> Optional[str]:
        return _env("APP_URL")

    # -------------------------
    # Supabase
    # -------------------------
    @property
    def SUPABASE_URL(self) -> Optional[str]:
        url = _env("SUPABASE_URL") or _env("NEXT_PUBLIC_SUPABASE_URL")
        return url.rstrip("/") if url else None

    @property
    def SUPABASE_SERVICE_ROLE_KEY(self) -> Optional[str]:
        return _env("SUPABASE_SERVICE_ROLE_KEY")

    @property
    def SUPABASE_ANON_KEY(self) -> Optional[str]:
        return _env("SUPABASE_ANON_KEY") or _env("NEXT_PUBLIC_SUPABASE_ANON_KEY")

    # -------------------------
    # Scheduler / cron
    # -------------------------
    @property
    def CRON_SECRET(self) -> Optional[str]:
        return _env("CRON_SECRET")

    @property
    def CRON_SCHEDULER_BASE_URL(self) -> Optional[str]:
        return _env("CRON_SCHEDULER_BASE_URL")

    @property
    def CRON_JOB_ORG_API_KEY(self) -> Optional[str]:
        return _env("CRON_JOB_ORG_API_KEY")

    @property
    def CRON_JOB_ORG_JOB_ID(self) -> Optional[str]:
        return _env("CRON_JOB_ORG_JOB_ID")

    @property
    def CRON_JOB_ORG_BASE_URL(self) -> str:
        return (_env("CRON_JOB_ORG_BASE_URL", "https://api.cron-job.org") or "").rstrip("/")

    @property
    def AUTOMATION_DISPATCH_MODE(self) -> str:
        mode = (_env("AUTOMATION_DISPATCH_MODE", "direct") or "direct").lower()
        return "scheduler" if mode == "scheduler" else "direct"

    @property
    def SCHEDULER_INPROCESS_TICK_SECONDS(self) -> int:
        try:
            return max(0, int(_env("SCHEDULER_INPROCESS_TICK_SECONDS", "0") or 0))
        except ValueError:
            return 0

    @property
    def KEEPALIVE_INTERVAL_SECONDS(self) -> int:
        try:
            return max(60, int(_env("KEEPALIVE_INTERVAL_SECONDS", "300") or 300))
        except ValueError:
            return 300

    # -------------------------
    # Stripe (mode-scoped)
    # -------------------------
    @property
    def STRIPE_MODE(self) -> str:
        raw = (_env("STRIPE_MODE", "live") or "live").lower()
        if raw not in ("live", "test"):
            raise ValueError(f'Invalid STRIPE_MODE value: {raw}. Expected "live" or "test".')
        return raw

    def stripe_value(self, base: str, mode: Optional[str] = None) -> Optional[str]:
        """
        Resolves BASE_LIVE / BASE_TEST before the bare BASE key.
        """
        mode = mode or self.STRIPE_MODE
        suffix = "_TEST" if mode == "test" else "_LIVE"
        return _env(f"{base}{suffix}") or _env(base)

    def stripe_secret_key(self, mode: Optional[str] = None) -> Optional[str]:
        mode = mode or self.STRIPE_MODE
        key = self.stripe_value("STRIPE_SECRET_KEY", mode)
        if not key and mode == "test":
            key = _env("STRIPE_TEST_SECRET")
        if key and mode == "live" and (key.startswith("sk_test_") or key.startswith("rk_test_")):
            raise ValueError("Invalid Stripe configuration: STRIPE_MODE=live but resolved secret key is test.")
        if key and mode == "test" and (key.startswith("sk_live_") or key.startswith("rk_live_")):
            raise ValueError("Invalid Stripe configuration: STRIPE_MODE=test but resolved secret key is live.")
        return key

    def stripe_webhook_secret(self, mode: Optional[str] = None) -> Optional[str]:
        return self.stripe_value("STRIPE_WEBHOOK_SECRET", mode)

    def stripe_price_id(self, plan: str, interval: str = "month", mode: Optional[str] = None) -> Optional[str]:
        base = f"STRIPE_PRICE_{plan.upper()}"
        if interval == "year":
            base += "_YEARLY"
        return self.stripe_value(base, mode)

    # -------------------------
    # Navlungo
    # -------------------------
    @property
    def NAVLUNGO_CLIENT_ID(self) -> Optional[str]:
        return _env("NAVLUNGO_CLIENT_ID")

    @property
    def NAVLUNGO_CLIENT_SECRET(self) -> Optional[str]:
        return _env("NAVLUNGO_CLIENT_SECRET")

    @property
    def NAVLUNGO_SCOPE(self) -> Optional[str]:
        return _env("NAVLUNGO_SCOPE")

    @property
    def NAVLUNGO_BASE_URL(self) -> str:
        return (_env("NAVLUNGO_BASE_URL", "https://api.navlungo.com") or "").rstrip("/")

    @property
    def NAVLUNGO_TIMEOUT_MS(self) -> int:
        try:
            return max(1000, int(_env("NAVLUNGO_TIMEOUT_MS", "15000") or 15000))
        except ValueError:
            return 15000

    def navlungo_default(self, field: str, default: str = "") -> str:
        return _env(f"NAVLUNGO_DEFAULT_{field.upper()}", default) or default


settings = Settings()
