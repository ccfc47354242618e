from apps.listflow.services.store_quota import (
    count_paid_extra_store_credits,
    load_user_store_quota,
    normalize_plan,
    resolve_effective_plan,
)
from apps.listflow.tests.conftest import USER_ID

FUTURE = "2099-01-01T00:00:00Z"
PAST = "2000-01-01T00:00:00Z"


def test_normalize_plan():
    assert normalize_plan("starter") == "standard"
    assert normalize_plan(" Pro ") == "pro"
    assert normalize_plan("turbo") == "turbo"
    assert normalize_plan("gold") is None


def test_effective_plan_prefers_highest_active():
    rows = [
        {"plan": "pro", "status": "active", "current_period_end": FUTURE, "updated_at": "2026-01-02"},
        {"plan": "turbo", "status": "canceled", "current_period_end": FUTURE, "updated_at": "2026-01-03"},
        {"plan": "standard", "status": "trialing", "current_period_end": None, "updated_at": "2026-01-04"},
    ]
    assert resolve_effective_plan(rows) == {"plan": "pro", "has_active_subscription": True}


def test_effective_plan_without_active_rows_uses_newest():
    rows = [{"plan": "turbo", "status": "active", "current_period_end": PAST}]
    assert resolve_effective_plan(rows) == {"plan": "turbo", "has_active_subscription": False}
    assert resolve_effective_plan([]) == {"plan": "standard", "has_active_subscription": False}


def test_extra_credits_are_deduplicated_by_session(fake_db):
    fake_db.tables["payments"] = [
        {"id": "p1", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "paid", "stripe_session_id": "cs_1"},
        {"id": "p2", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "paid", "stripe_session_id": "cs_1"},
        {"id": "p3", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "paid", "stripe_session_id": "cs_2"},
        {"id": "p4", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "pending", "stripe_session_id": "cs_3"},
        {"id": "p5", "user_id": USER_ID, "shop_id": "store-abc", "status": "paid", "stripe_session_id": "cs_4"},
    ]
    assert count_paid_extra_store_credits(USER_ID, fake_db) == 2


def test_extra_credits_fall_back_without_session_column(fake_db):
    fake_db.schema["payments"] = {"id", "user_id", "shop_id", "status"}
    fake_db.tables["payments"] = [
        {"id": "p1", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "paid"},
        {"id": "p2", "user_id": USER_ID, "shop_id": "extra_store_credit:pro", "status": "paid"},
    ]
    assert count_paid_extra_store_credits(USER_ID, fake_db) == 2


def test_quota_numbers(fake_db):
    fake_db.tables["subscriptions"] = [
        {"id": "s1", "user_id": USER_ID, "plan": "standard", "status": "active", "current_period_end": FUTURE, "updated_at": "2026-01-01"},
    ]
    fake_db.tables["stores"] = [{"id": f"st{i}", "user_id": USER_ID} for i in range(5)]
    fake_db.tables["payments"] = [
        {"id": "p1", "user_id": USER_ID, "shop_id": "extra_store_credit:standard", "status": "paid", "stripe_session_id": "cs_1"},
    ]

    quota = load_user_store_quota(USER_ID, fake_db)

    assert quota["plan"] == "standard"
    assert quota["hasActiveSubscription"] is True
    assert quota["includedStoreLimit"] == 4
    assert quota["totalStores"] == 5
    assert quota["purchasedExtraStores"] == 1
    assert quota["usedExtraStores"] == 1
    assert quota["remainingSlots"] == 0
    assert quota["canCreateStore"] is False
    assert quota["extraStorePriceCents"] == 2000
    assert [o["plan"] for o in quota["upgradeOptions"]] == ["pro", "turbo"]


def test_quota_route(client, user_headers):
    res = client.get("/api/stores/quota", headers=user_headers)
    assert res.status_code == 200
    assert res.headers["cache-control"] == "no-store"
    body = res.json()
    assert body["plan"] == "standard"
    assert body["remainingSlots"] == 4
    assert body["canCreateStore"] is True


def test_quota_route_requires_auth(client):
    res = client.get("/api/stores/quota")
    assert res.status_code == 401
