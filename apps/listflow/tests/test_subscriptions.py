from datetime import datetime, timezone

import pytest
import stripe

from apps.listflow.services.subscriptions import (
    cancel_stripe_subscriptions_now,
    is_subscription_active,
    load_user_subscriptions,
    resolve_store_id_from_subscription,
    subscription_month_index,
)
from apps.listflow.tests.conftest import USER_ID

STORE_ID = "22222222-2222-4222-8222-222222222222"
NOW = datetime(2026, 5, 10, tzinfo=timezone.utc)


@pytest.fixture
def stripe_key(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY_LIVE", "sk_live_dummy")


def test_is_subscription_active():
    assert is_subscription_active({"status": "active", "current_period_end": None}, NOW)
    assert is_subscription_active({"status": "trialing", "current_period_end": "2026-06-01T00:00:00Z"}, NOW)
    assert not is_subscription_active({"status": "active", "current_period_end": "2026-05-01T00:00:00Z"}, NOW)
    assert not is_subscription_active({"status": "canceled", "current_period_end": None}, NOW)
    assert is_subscription_active({"status": "active", "current_period_end": "2026-06-01T00:00:00.25+00:00"}, NOW)


def test_store_id_falls_back_to_uuid_shop_id():
    assert resolve_store_id_from_subscription({"store_id": "s1", "shop_id": STORE_ID}) == "s1"
    assert resolve_store_id_from_subscription({"shop_id": STORE_ID}) == STORE_ID
    assert resolve_store_id_from_subscription({"shop_id": "my-etsy-shop"}) is None


def test_month_index():
    assert subscription_month_index("2026-05-01T00:00:00Z", NOW) == 1
    assert subscription_month_index("2026-03-10T00:00:00Z", NOW) == 3
    assert subscription_month_index("2026-03-11T00:00:00Z", NOW) == 2
    assert subscription_month_index(None, NOW) == 1
    assert subscription_month_index("2027-01-01T00:00:00Z", NOW) == 1


def test_load_user_subscriptions_without_store_id_column(fake_db):
    fake_db.schema["subscriptions"] = {
        "id", "user_id", "shop_id", "plan", "status", "current_period_end",
        "stripe_subscription_id", "stripe_customer_id", "updated_at", "created_at",
    }
    fake_db.tables["subscriptions"] = [
        {"id": "a", "user_id": USER_ID, "shop_id": STORE_ID, "status": "active", "updated_at": "2026-01-01"},
        {"id": "b", "user_id": USER_ID, "shop_id": "legacy-shop", "status": "active", "updated_at": "2026-02-01"},
    ]

    rows = load_user_subscriptions(USER_ID, fake_db)

    assert [r["id"] for r in rows] == ["b", "a"]
    assert rows[0]["store_id"] is None
    assert rows[1]["store_id"] == STORE_ID


def test_cancel_collects_missing_and_failed(monkeypatch, stripe_key):
    def fake_cancel(stripe_id, api_key=None):
        assert api_key == "sk_live_dummy"
        if stripe_id == "sub_gone":
            raise stripe.InvalidRequestError("No such subscription: 'sub_gone'", "id")
        return {"id": stripe_id, "status": "canceled"}

    monkeypatch.setattr(stripe.Subscription, "cancel", fake_cancel)

    result = cancel_stripe_subscriptions_now(
        [
            {"id": "r1", "stripe_subscription_id": "sub_ok"},
            {"id": "r2", "stripe_subscription_id": "sub_gone"},
            {"id": "r3", "stripe_subscription_id": None},
        ]
    )

    assert result["canceled_ids"] == ["r1"]
    assert result["missing_stripe_ids"] == ["r3"]
    assert result["failed"][0]["id"] == "r2"
    assert "active Stripe mode (live)" in result["failed"][0]["message"]


# -------------------------
# Routes
# -------------------------

def _active_row(row_id, stripe_id, store_id=STORE_ID):
    return {
        "id": row_id,
        "user_id": USER_ID,
        "store_id": store_id,
        "plan": "pro",
        "status": "active",
        "current_period_end": "2099-01-01T00:00:00Z",
        "stripe_subscription_id": stripe_id,
        "updated_at": "2026-01-01T00:00:00Z",
    }


def test_subscription_list_route(client, fake_db, user_headers):
    fake_db.tables["subscriptions"] = [
        _active_row("r1", "sub_1"),
        {**_active_row("r2", "sub_2"), "status": "canceled", "updated_at": "2025-01-01T00:00:00Z"},
    ]
    res = client.get("/api/settings/subscription", headers=user_headers)
    assert res.status_code == 200
    assert [(r["id"], r["active"]) for r in res.json()["rows"]] == [("r1", True), ("r2", False)]


def test_cancel_without_active_subscription(client, user_headers):
    res = client.post("/api/settings/subscription/cancel", headers=user_headers)
    assert res.status_code == 200
    assert res.json() == {"success": True, "canceledCount": 0, "alreadyStopped": True}


def test_cancel_missing_stripe_id_is_conflict(client, fake_db, user_headers, stripe_key):
    fake_db.tables["subscriptions"] = [_active_row("r1", None)]
    res = client.post("/api/settings/subscription/cancel", headers=user_headers)
    assert res.status_code == 409
    assert res.json()["missingStripeIds"] == ["r1"]


def test_cancel_marks_rows_and_store(client, fake_db, user_headers, stripe_key, monkeypatch):
    monkeypatch.setattr(stripe.Subscription, "cancel", lambda stripe_id, api_key=None: {"id": stripe_id})
    fake_db.tables["subscriptions"] = [_active_row("r1", "sub_1")]
    fake_db.tables["stores"] = [{"id": STORE_ID, "user_id": USER_ID, "status": "active"}]
    fake_db.schema["stores"] = {"id", "user_id", "status"}

    res = client.post("/api/settings/subscription/cancel", headers=user_headers)

    assert res.status_code == 200
    assert res.json() == {"success": True, "canceledCount": 1, "failed": []}
    assert fake_db.rows("subscriptions")[0]["status"] == "canceled"
    # stores has no updated_at column; the narrower update still lands
    assert fake_db.rows("stores")[0]["status"] == "canceled"


def test_cancel_partial_failure_is_bad_gateway(client, fake_db, user_headers, stripe_key, monkeypatch):
    def fake_cancel(stripe_id, api_key=None):
        if stripe_id == "sub_2":
            raise stripe.APIConnectionError("network down")
        return {"id": stripe_id}

    monkeypatch.setattr(stripe.Subscription, "cancel", fake_cancel)
    fake_db.tables["subscriptions"] = [_active_row("r1", "sub_1"), _active_row("r2", "sub_2", store_id=None)]

    res = client.post("/api/settings/subscription/cancel", headers=user_headers)

    assert res.status_code == 502
    body = res.json()
    assert body["success"] is False
    assert body["canceledCount"] == 1
    assert body["failed"][0]["id"] == "r2"
