from types import SimpleNamespace

import pytest
import requests
import stripe

from apps.listflow.routes import admin_webhooks
from apps.listflow.services.admin import automation_switch
from apps.listflow.services.n8n import N8nDispatchResult
from apps.listflow.tests.conftest import ADMIN_ID, USER_ID
from apps.listflow.tests.fakes import _duplicate

STORE_ID = "12121212-1212-4212-8212-121212121212"
WEBHOOK_ID = "34343434-3434-4434-8434-343434343434"


def test_admin_routes_hide_from_non_admins(client, fake_db, user_headers):
    for method, url in (
        ("GET", "/api/admin/webhooks/configs"),
        ("GET", "/api/admin/subscriptions"),
        ("GET", "/api/admin/extension-logs"),
        ("POST", f"/api/admin/stores/{STORE_ID}/automation-switch"),
    ):
        res = client.request(method, url, headers=user_headers)
        assert res.status_code == 404, url
        assert res.json() == {"error": "Not Found"}


# -------------------------
# Automation switch
# -------------------------

@pytest.fixture
def switch_world(fake_db, monkeypatch):
    fake_db.tables["stores"] = [{"id": STORE_ID, "user_id": USER_ID, "product_id": None, "active_webhook_config_id": None}]
    fake_db.tables["subscriptions"] = [
        {"id": "sub-row", "user_id": USER_ID, "store_id": STORE_ID, "plan": "pro", "status": "active",
         "created_at": "2026-01-15T00:00:00Z", "updated_at": "2026-01-15T00:00:00Z"},
    ]
    fake_db.tables["webhook_configs"] = [
        {"id": WEBHOOK_ID, "name": "Mug flow", "target_url": "https://n8n.example.com/mug", "method": "POST",
         "headers": {}, "enabled": True, "scope": "automation", "product_id": "prod-1"},
    ]
    state = SimpleNamespace(sent=[], cron_calls=0)

    def fake_dispatch(url, payload, idempotency_key, method="POST", headers=None, triggered_at=None):
        state.sent.append({"url": url, "payload": payload, "key": idempotency_key})
        return N8nDispatchResult(True, 200, "queued", url, method)

    def fake_sync(force=False):
        state.cron_calls += 1
        return {"ok": True, "status": "updated", "jobId": 7}

    monkeypatch.setattr(automation_switch, "dispatch_n8n_trigger", fake_dispatch)
    monkeypatch.setattr(automation_switch, "sync_scheduler_cron_job_lifecycle", fake_sync)
    fake_db.switch = state
    return fake_db


def _switch(client, headers, body, store_id=STORE_ID):
    return client.post(f"/api/admin/stores/{store_id}/automation-switch", headers=headers, json=body)


def test_switch_binds_store_and_fires_webhook(client, switch_world, admin_headers):
    res = _switch(client, admin_headers, {"webhookConfigId": WEBHOOK_ID})

    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["cronSync"]["status"] == "updated"
    assert body["targetWebhook"] == {"id": WEBHOOK_ID, "name": "Mug flow"}
    assert body["dispatch"] == {"status": 200, "body": "queued"}
    assert body["idempotencyKey"].startswith(f"manual_switch:{STORE_ID}:{WEBHOOK_ID}:")

    store = switch_world.rows("stores")[0]
    assert store["active_webhook_config_id"] == WEBHOOK_ID
    assert store["product_id"] == "prod-1"
    assert store["automation_updated_by"] == ADMIN_ID

    job = switch_world.rows("scheduler_jobs")[0]
    assert (job["trigger_type"], job["status"], job["request_payload"]) == (
        "manual_switch", "success", {"client_id": STORE_ID}
    )
    transition = switch_world.rows("store_automation_transitions")[0]
    assert transition["status"] == "success"
    assert transition["to_webhook_config_id"] == WEBHOOK_ID
    mapping = [r for r in switch_world.rows("webhook_logs") if r["request_method"] == "STORE_WEBHOOK_MAP"]
    assert mapping[0]["request_body"]["webhook_config_id"] == WEBHOOK_ID
    assert switch_world.switch.sent[0]["payload"] == {"client_id": STORE_ID}


def test_switch_accepts_target_alias_and_legacy_store_schema(client, switch_world, admin_headers):
    switch_world.schema["stores"] = {"id", "user_id"}
    switch_world.missing_tables.add("store_automation_transitions")

    res = _switch(client, admin_headers, {"targetWebhookConfigId": WEBHOOK_ID})

    assert res.status_code == 200
    assert res.json()["transitionId"] is None
    assert "active_webhook_config_id" not in switch_world.rows("stores")[0]


def test_switch_requires_webhook_id(client, switch_world, admin_headers):
    res = _switch(client, admin_headers, {})
    assert res.status_code == 400
    assert res.json() == {"error": "webhookConfigId is required"}


@pytest.mark.parametrize(
    "mutate,status,code",
    [
        (lambda db: db.tables["stores"].clear(), 404, "STORE_NOT_FOUND"),
        (lambda db: db.tables["subscriptions"][0].update(status="canceled"), 400, "SUBSCRIPTION_INACTIVE"),
        (lambda db: db.tables["webhook_configs"].clear(), 404, "WEBHOOK_NOT_FOUND"),
        (lambda db: db.tables["webhook_configs"][0].update(enabled=False), 400, "WEBHOOK_DISABLED"),
        (lambda db: db.tables["webhook_configs"][0].update(scope="generic"), 400, "WEBHOOK_SCOPE_INVALID"),
    ],
)
def test_switch_rejections(client, switch_world, admin_headers, mutate, status, code):
    mutate(switch_world)
    res = _switch(client, admin_headers, {"webhookConfigId": WEBHOOK_ID})
    assert res.status_code == status
    assert res.json()["code"] == code
    assert switch_world.switch.sent == []


def test_switch_already_processed_this_minute(client, switch_world, admin_headers, monkeypatch):
    monkeypatch.setattr(automation_switch, "find_recent_switch_job", lambda key, sb: {"id": "j", "status": "success"})

    res = _switch(client, admin_headers, {"webhookConfigId": WEBHOOK_ID})

    assert res.status_code == 409
    assert res.json()["code"] == "MANUAL_SWITCH_DUPLICATE"
    assert res.json()["idempotencyKey"].startswith("manual_switch:")


def test_switch_insert_race_is_duplicate(client, switch_world, admin_headers):
    switch_world.errors[("scheduler_jobs", "insert")] = _duplicate("scheduler_jobs")

    res = _switch(client, admin_headers, {"webhookConfigId": WEBHOOK_ID})

    assert res.status_code == 409
    assert res.json()["code"] == "MANUAL_SWITCH_DUPLICATE"
    assert switch_world.rows("store_automation_transitions")[0]["status"] == "failed"
    assert switch_world.switch.sent == []


# -------------------------
# Webhook configs
# -------------------------

def test_config_crud(client, fake_db, admin_headers):
    fake_db.tables["products"] = [{"id": "prod-1", "title_tr": "Kupa", "title_en": "Mug"}]

    created = client.post(
        "/api/admin/webhooks/configs",
        headers=admin_headers,
        json={"targetUrl": " https://n8n.example.com/a ", "method": "get", "productId": "prod-1",
              "headers": {"X-Key": 1}},
    )
    assert created.status_code == 200
    row = created.json()["row"]
    assert (row["name"], row["target_url"], row["method"], row["headers"]) == (
        "Kupa", "https://n8n.example.com/a", "GET", {"X-Key": "1"}
    )

    listed = client.get("/api/admin/webhooks/configs", headers=admin_headers).json()["rows"]
    assert [r["id"] for r in listed] == [row["id"]]

    patched = client.patch(f"/api/admin/webhooks/configs/{row['id']}", headers=admin_headers, json={"enabled": False})
    assert patched.json()["row"]["enabled"] is False

    assert client.delete(f"/api/admin/webhooks/configs/{row['id']}", headers=admin_headers).json() == {"success": True}
    assert fake_db.rows("webhook_configs") == []


def test_config_validation_and_conflict(client, fake_db, admin_headers):
    fake_db.tables["products"] = [{"id": "prod-1", "title_tr": "Kupa"}]
    fake_db.unique["webhook_configs"] = [("target_url",)]
    body = {"targetUrl": "https://n8n.example.com/a", "productId": "prod-1"}

    missing = client.post("/api/admin/webhooks/configs", headers=admin_headers, json={"productId": "prod-1"})
    unknown_product = client.post(
        "/api/admin/webhooks/configs", headers=admin_headers, json={**body, "productId": "nope"}
    )
    first = client.post("/api/admin/webhooks/configs", headers=admin_headers, json=body)
    second = client.post("/api/admin/webhooks/configs", headers=admin_headers, json=body)

    assert missing.json() == {"error": "targetUrl is required"}
    assert unknown_product.json() == {"error": "Selected product was not found."}
    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["code"] == "WEBHOOK_CONFIG_CONFLICT"


def test_patch_unknown_config(client, fake_db, admin_headers):
    res = client.patch("/api/admin/webhooks/configs/nope", headers=admin_headers, json={"enabled": True})
    assert res.status_code == 404
    assert res.json()["code"] == "WEBHOOK_NOT_FOUND"


# -------------------------
# Webhook console
# -------------------------

class _ConsoleResponse:
    status_code = 201
    text = '{"ok":true}'
    headers = {"content-type": "application/json"}


def test_console_executes_and_saves_config(client, fake_db, admin_headers, monkeypatch):
    sent = []

    def fake_request(method, url, **kwargs):
        sent.append((method, url, kwargs))
        return _ConsoleResponse()

    monkeypatch.setattr(admin_webhooks.requests, "request", fake_request)

    res = client.post(
        "/api/admin/webhook-console/execute",
        headers=admin_headers,
        json={
            "url": "https://n8n.example.com/test",
            "method": "POST",
            "headers": {"Authorization": "Bearer live", "X-Trace": "1"},
            "payload": {"client_id": "store-1"},
            "saveConfig": True,
            "configName": "Test flow",
            "configProductId": "prod-9",
        },
    )

    assert res.status_code == 200
    body = res.json()
    assert body["result"]["status"] == 201
    assert body["result"]["body"] == '{"ok":true}'
    assert body["savedConfig"]["headers"] == {"Authorization": "[REDACTED]", "X-Trace": "1"}
    assert sent[0][0] == "POST"
    assert sent[0][2]["json"] == {"client_id": "store-1"}

    log_row = fake_db.rows("webhook_logs")[0]
    assert log_row["created_by"] == ADMIN_ID
    assert log_row["response_status"] == 201
    assert log_row["request_headers"]["Authorization"] == "[REDACTED]"


def test_console_validation(client, fake_db, admin_headers):
    assert client.post("/api/admin/webhook-console/execute", headers=admin_headers, json={"method": "GET"}).status_code == 400
    res = client.post(
        "/api/admin/webhook-console/execute",
        headers=admin_headers,
        json={"url": "https://x", "method": "GET", "saveConfig": True, "configName": "n"},
    )
    assert res.json() == {"error": "configProductId is required when saveConfig=true"}


def test_console_network_error(client, fake_db, admin_headers, monkeypatch):
    def boom(method, url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(admin_webhooks.requests, "request", boom)

    res = client.post(
        "/api/admin/webhook-console/execute", headers=admin_headers, json={"url": "https://x", "method": "GET"}
    )

    assert res.status_code == 500
    assert fake_db.rows("webhook_logs")[0]["response_status"] == 500


# -------------------------
# cron-job.org
# -------------------------

def test_cron_routes_without_api_key(client, fake_db, admin_headers):
    bootstrap = client.post("/api/admin/webhooks/cron/bootstrap", headers=admin_headers)
    jobs = client.get("/api/admin/webhooks/cron/jobs", headers=admin_headers)

    assert bootstrap.status_code == 200
    assert bootstrap.json()["status"] == "skipped"
    assert jobs.status_code == 500
    assert jobs.json()["code"] == "CRON_JOB_ORG_ERROR"


# -------------------------
# Extension logs
# -------------------------

def test_extension_logs_paging_and_filters(client, fake_db, admin_headers):
    fake_db.tables["extension_logs"] = [
        {"id": i, "user_id": USER_ID, "store_name": "Mug Shop" if i % 2 else "Hat Shop",
         "level": "error" if i % 3 == 0 else "info", "event": f"publish_{i}", "created_at": f"2026-05-01T00:{i:02d}:00Z"}
        for i in range(60)
    ]

    first = client.get("/api/admin/extension-logs", headers=admin_headers).json()
    second = client.get("/api/admin/extension-logs?offset=50", headers=admin_headers).json()
    filtered = client.get("/api/admin/extension-logs?level=error&store_name=mug", headers=admin_headers).json()

    assert len(first["logs"]) == 50 and first["has_more"] is True
    assert first["logs"][0]["id"] == 59
    assert len(second["logs"]) == 10 and second["has_more"] is False
    assert filtered["logs"] and all(
        log["level"] == "error" and log["store_name"] == "Mug Shop" for log in filtered["logs"]
    )


# -------------------------
# Subscriptions
# -------------------------

def test_admin_subscription_list(client, fake_db, admin_headers):
    fake_db.tables["subscriptions"] = [
        {"id": "s1", "user_id": USER_ID, "plan": "pro", "status": "active", "current_period_end": None,
         "created_at": "2026-01-01T00:00:00Z"},
    ]
    rows = client.get("/api/admin/subscriptions", headers=admin_headers).json()["rows"]
    assert rows[0]["active"] is True
    assert rows[0]["monthIndex"] >= 1


def test_rebind_without_stripe_key(client, fake_db, admin_headers):
    res = client.post("/api/admin/stripe/rebind-subscriptions", headers=admin_headers, json={"dryRun": True})
    assert res.status_code == 500
    assert "not configured" in res.json()["error"]


def test_rebind_dry_run(client, fake_db, admin_headers, monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY_LIVE", "sk_live_dummy")
    monkeypatch.setenv("STRIPE_PRICE_PRO_LIVE", "price_pro_new")
    monkeypatch.delenv("STRIPE_PRICE_TURBO_LIVE", raising=False)
    monkeypatch.delenv("STRIPE_PRICE_TURBO", raising=False)
    fake_db.tables["subscriptions"] = [
        {"id": "s1", "plan": "pro", "status": "active", "stripe_subscription_id": "sub_1"},
        {"id": "s2", "plan": "turbo", "status": "active", "stripe_subscription_id": "sub_2"},
    ]
    prices = {"sub_1": "price_pro_old", "sub_2": "price_turbo"}

    def fake_retrieve(stripe_id, **kwargs):
        return {
            "id": stripe_id,
            "metadata": {},
            "items": {"data": [{"id": "si", "price": {"id": prices[stripe_id], "recurring": {"interval": "month"}}}]},
        }

    def forbidden_modify(*args, **kwargs):
        raise AssertionError("dry run must not modify")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.Subscription, "modify", forbidden_modify)

    res = client.post("/api/admin/stripe/rebind-subscriptions", headers=admin_headers, json={"dryRun": True})

    body = res.json()
    assert (body["mode"], body["scanned"], body["updated"], body["dryRun"]) == ("live", 2, 1, True)
    assert body["failures"] == [{"subscriptionId": "sub_2", "reason": "No Stripe price configured for turbo/month (live)"}]
