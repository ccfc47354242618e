import pytest
from fastapi.testclient import TestClient

from apps.listflow import db
from apps.listflow.services import cron_job_org
from apps.listflow.services.navlungo import client as navlungo_client
from apps.listflow.tests.fakes import FakeSupabase

USER_ID = "11111111-1111-4111-8111-111111111111"
ADMIN_ID = "99999999-9999-4999-8999-999999999999"
USER_TOKEN = "user-token"
ADMIN_TOKEN = "admin-token"

_ISOLATED_ENV = (
    "SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_ANON_KEY",
    "NEXT_PUBLIC_SUPABASE_ANON_KEY",
    "CRON_SECRET",
    "CRON_JOB_ORG_API_KEY",
    "CRON_JOB_ORG_JOB_ID",
    "CRON_SCHEDULER_BASE_URL",
    "APP_URL",
    "AUTOMATION_DISPATCH_MODE",
    "STRIPE_MODE",
    "STRIPE_SECRET_KEY",
    "STRIPE_SECRET_KEY_LIVE",
    "STRIPE_SECRET_KEY_TEST",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_WEBHOOK_SECRET_LIVE",
    "STRIPE_WEBHOOK_SECRET_TEST",
    "NAVLUNGO_CLIENT_ID",
    "NAVLUNGO_CLIENT_SECRET",
    "NAVLUNGO_BASE_URL",
    "LISTFLOW_REQUEST_LOGGING",
    "LISTFLOW_SCHEDULER_ENABLED",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """No test talks to a real Supabase, Stripe, Navlungo or cron-job.org."""
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(db, "_client", None)
    cron_job_org.reset_lifecycle_cooldown()
    navlungo_client.reset_token_cache()


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeSupabase()
    fake.add_user(USER_TOKEN, USER_ID, email="seller@example.com")
    fake.add_user(ADMIN_TOKEN, ADMIN_ID, email="admin@example.com", role="admin")
    monkeypatch.setattr(db, "_client", fake)
    return fake


@pytest.fixture
def client(fake_db):
    from apps.listflow.main import app

    return TestClient(app)


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
