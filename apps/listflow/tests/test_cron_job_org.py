import json
from datetime import datetime, timezone

import pytest

from apps.listflow.services import cron_job_org
from apps.listflow.services.cron_job_org import (
    AUTOMATION_TITLE_PREFIX,
    LIFECYCLE_SYNC_COOLDOWN_SECONDS,
    SCHEDULER_JOB_TITLE,
    CronJobOrgClient,
    CronJobOrgError,
    automation_schedule,
    build_desired_direct_jobs,
    find_scheduler_job_id,
    load_direct_automation_cron_jobs,
    next_execution_unix,
    parse_automation_title,
    scheduler_job_payload,
    sync_direct_automation_cron_jobs,
    sync_scheduler_cron_job_lifecycle,
)
from apps.listflow.tests.conftest import USER_ID

BASE = "https://listflow.example.com"
TICK_URL = f"{BASE}/api/scheduler/tick"
STORE = "55555555-5555-4555-8555-555555555555"


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self.text = json.dumps(data) if data is not None else ""
        self.content = self.text.encode()
        self._data = data

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._data is None:
            raise ValueError("no body")
        return self._data


@pytest.fixture
def cron_api(monkeypatch):
    """Scripted cron-job.org: responses are popped in order, requests recorded."""
    monkeypatch.setenv("CRON_JOB_ORG_API_KEY", "cron-key")
    monkeypatch.setenv("CRON_SECRET", "tick-secret")
    monkeypatch.setenv("CRON_SCHEDULER_BASE_URL", BASE + "/")
    monkeypatch.setattr(cron_job_org.time, "sleep", lambda seconds: None)
    api = {"requests": [], "responses": []}

    def fake_request(method, url, headers=None, json=None, timeout=None):
        api["requests"].append({"method": method, "url": url, "json": json, "headers": headers})
        return api["responses"].pop(0)

    monkeypatch.setattr(cron_job_org.requests, "request", fake_request)
    return api


def _bound_store(fake_db):
    fake_db.tables["subscriptions"] = [
        {"id": "sub-1", "user_id": USER_ID, "store_id": STORE, "plan": "pro", "status": "active",
         "current_period_end": None, "created_at": "2026-01-01T00:00:00Z"},
    ]
    fake_db.tables["stores"] = [{"id": STORE, "user_id": USER_ID, "active_webhook_config_id": "wh-1"}]
    fake_db.tables["webhook_configs"] = [
        {"id": "wh-1", "target_url": "https://n8n.example.com/a", "method": "POST", "headers": {},
         "enabled": True, "scope": "automation", "created_at": "2026-01-01T00:00:00Z"},
    ]


def test_job_payload_follows_dispatch_mode(cron_api, monkeypatch):
    direct = scheduler_job_payload()
    assert direct["url"] == TICK_URL
    assert direct["title"] == SCHEDULER_JOB_TITLE
    assert (direct["schedule"]["hours"], direct["schedule"]["minutes"]) == ([0], [0])
    assert direct["extendedData"]["headers"]["Authorization"] == "Bearer tick-secret"

    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    every_minute = scheduler_job_payload()["schedule"]
    assert (every_minute["hours"], every_minute["minutes"]) == ([-1], [-1])


def test_find_job_prefers_configured_then_title(cron_api, monkeypatch):
    jobs = [
        {"jobId": 1, "title": "other", "url": TICK_URL},
        {"jobId": 2, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL},
        {"jobId": 3, "title": SCHEDULER_JOB_TITLE, "url": "https://elsewhere"},
    ]
    assert find_scheduler_job_id(jobs) == 2
    assert find_scheduler_job_id(jobs[:1]) == 1
    assert find_scheduler_job_id(jobs[2:]) is None

    monkeypatch.setenv("CRON_JOB_ORG_JOB_ID", "3")
    assert find_scheduler_job_id(jobs) == 3


def test_client_retries_rate_limit(cron_api):
    cron_api["responses"] = [FakeResponse(429, {"error": "slow down"}), FakeResponse(200, {"jobs": [{"jobId": 9}]})]

    jobs = CronJobOrgClient("cron-key", BASE).list_jobs()

    assert jobs == [{"jobId": 9}]
    assert len(cron_api["requests"]) == 2
    assert cron_api["requests"][0]["headers"]["Authorization"] == "Bearer cron-key"


def test_client_raises_on_error_status(cron_api):
    cron_api["responses"] = [FakeResponse(500, {"message": "down"})]
    with pytest.raises(CronJobOrgError) as exc:
        CronJobOrgClient("cron-key", BASE).delete_job(4)
    assert exc.value.status == 500
    assert str(exc.value) == "HTTP 500: down"
    assert not exc.value.rate_limited


def test_lifecycle_creates_job_while_a_store_is_bound(cron_api, fake_db, monkeypatch):
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    _bound_store(fake_db)
    cron_api["responses"] = [FakeResponse(200, {"jobs": []}), FakeResponse(200, {"jobId": 41})]

    result = sync_scheduler_cron_job_lifecycle()

    assert result["status"] == "created"
    assert result["jobId"] == 41
    put = cron_api["requests"][1]
    assert put["method"] == "PUT"
    assert put["json"]["job"]["url"] == TICK_URL


def test_lifecycle_updates_existing_job(cron_api, fake_db, monkeypatch):
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    _bound_store(fake_db)
    cron_api["responses"] = [
        FakeResponse(200, {"jobs": [{"jobId": 7, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL}]}),
        FakeResponse(200, {}),
    ]

    result = sync_scheduler_cron_job_lifecycle()

    assert result["status"] == "updated"
    assert cron_api["requests"][1]["url"].endswith("/jobs/7")


def test_lifecycle_deletes_job_without_bound_stores(cron_api, fake_db, monkeypatch):
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    cron_api["responses"] = [
        FakeResponse(200, {"jobs": [{"jobId": 7, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL}]}),
        FakeResponse(204),
    ]

    result = sync_scheduler_cron_job_lifecycle()

    assert result["status"] == "deleted"
    assert cron_api["requests"][1]["method"] == "DELETE"


def test_lifecycle_cooldown_and_force(cron_api, fake_db, monkeypatch):
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    cron_api["responses"] = [FakeResponse(200, {"jobs": []}), FakeResponse(200, {"jobs": []})]

    assert sync_scheduler_cron_job_lifecycle()["status"] == "noop"
    assert sync_scheduler_cron_job_lifecycle()["message"].endswith("(cooldown).")
    assert sync_scheduler_cron_job_lifecycle(force=True)["status"] == "noop"
    assert len(cron_api["requests"]) == 2


def test_lifecycle_rate_limit_is_skipped(cron_api, fake_db):
    cron_api["responses"] = [FakeResponse(429, {"error": "rate limit"})] * 4

    result = sync_scheduler_cron_job_lifecycle()

    assert result["ok"] is False
    assert result["status"] == "skipped"
    assert "rate limit" in result["message"]


def test_lifecycle_without_key_is_skipped(fake_db):
    assert sync_scheduler_cron_job_lifecycle() == {
        "ok": False,
        "status": "skipped",
        "message": "Cron API key not found; cron sync skipped.",
    }


def test_cooldown_counts_from_last_real_run(cron_api, fake_db, monkeypatch):
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "scheduler")
    clock = {"now": 1000.0}
    monkeypatch.setattr(cron_job_org.time, "monotonic", lambda: clock["now"])
    cron_api["responses"] = [FakeResponse(200, {"jobs": []}), FakeResponse(200, {"jobs": []})]

    assert sync_scheduler_cron_job_lifecycle()["message"] == "No scheduler cron job to delete."

    clock["now"] += LIFECYCLE_SYNC_COOLDOWN_SECONDS - 10
    assert sync_scheduler_cron_job_lifecycle()["message"].endswith("(cooldown).")

    clock["now"] += 20
    assert sync_scheduler_cron_job_lifecycle()["message"] == "No scheduler cron job to delete."
    assert len(cron_api["requests"]) == 2


# -------------------------
# Direct automation jobs
# -------------------------

DIRECT_TITLE = f"{AUTOMATION_TITLE_PREFIX}sub-1::{STORE}::wh-1::pro"


def test_automation_schedule_follows_anchor_and_plan():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    pro = automation_schedule("pro", "2026-01-01T05:30:00Z", now)
    assert pro["hours"] == [1, 5, 9, 13, 17, 21]
    assert pro["minutes"] == [30]
    assert pro["mdays"] == [-1]

    assert automation_schedule("turbo", "2026-01-01T23:05:00Z", now)["hours"] == list(range(1, 24, 2))
    assert automation_schedule(None, None, now)["hours"] == [4, 12, 20]


def test_next_execution_steps_whole_windows_from_anchor():
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    nxt = next_execution_unix("pro", "2026-01-01T05:30:45Z", now)
    assert nxt == int(datetime(2026, 1, 1, 13, 30, tzinfo=timezone.utc).timestamp())

    later = next_execution_unix("standard", "2026-01-02T00:00:00Z", now)
    assert later == int(datetime(2026, 1, 2, tzinfo=timezone.utc).timestamp())


def test_title_round_trip_fields():
    assert parse_automation_title(DIRECT_TITLE) == {
        "subscriptionId": "sub-1",
        "storeId": STORE,
        "webhookConfigId": "wh-1",
        "plan": "pro",
    }
    assert parse_automation_title(SCHEDULER_JOB_TITLE)["storeId"] is None


def test_desired_direct_jobs_for_bound_store(fake_db):
    _bound_store(fake_db)
    fake_db.tables["stores"][0]["automation_updated_at"] = "2026-02-01T06:15:00Z"
    fake_db.tables["webhook_configs"][0]["headers"] = {"X-Token": "t", "Retries": 2}

    jobs = build_desired_direct_jobs()

    assert [job.title for job in jobs] == [DIRECT_TITLE]
    payload = jobs[0].payload
    assert payload["url"] == "https://n8n.example.com/a"
    assert payload["requestMethod"] == 1
    assert payload["schedule"]["hours"] == [2, 6, 10, 14, 18, 22]
    assert payload["schedule"]["minutes"] == [15]
    assert payload["extendedData"]["headers"] == {"Content-Type": "application/json", "X-Token": "t", "Retries": "2"}
    assert json.loads(payload["extendedData"]["body"]) == {"client_id": STORE}


def test_desired_direct_jobs_skip_disabled_and_get_has_no_body(fake_db):
    _bound_store(fake_db)
    fake_db.tables["webhook_configs"][0]["method"] = "GET"
    get_job = build_desired_direct_jobs()[0].payload
    assert get_job["requestMethod"] == 0
    assert "body" not in get_job["extendedData"]
    assert get_job["extendedData"]["headers"] == {}

    fake_db.tables["webhook_configs"][0]["enabled"] = False
    assert build_desired_direct_jobs() == []


def test_direct_sync_creates_updates_and_deletes_by_title(cron_api, fake_db):
    _bound_store(fake_db)
    desired = build_desired_direct_jobs()[0].payload
    cron_api["responses"] = [
        FakeResponse(200, {"jobs": [
            {"jobId": 5, **desired, "url": "https://n8n.example.com/old"},
            {"jobId": 6, "title": f"{AUTOMATION_TITLE_PREFIX}gone::x::y::pro", "url": "https://n8n.example.com/x"},
            {"jobId": 7, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL},
        ]}),
        FakeResponse(200, {}),
        FakeResponse(204),
    ]

    result = sync_direct_automation_cron_jobs(CronJobOrgClient("cron-key", BASE))

    assert result["ok"] is True
    assert (result["updated"], result["deleted"], result["created"]) == (1, 1, 0)
    assert result["existingManaged"] == 2
    patch, delete = cron_api["requests"][1:]
    assert (patch["method"], patch["url"]) == ("PATCH", f"{BASE}/jobs/5")
    assert patch["json"]["job"]["url"] == "https://n8n.example.com/a"
    assert (delete["method"], delete["url"]) == ("DELETE", f"{BASE}/jobs/6")


def test_direct_sync_leaves_matching_job_alone(cron_api, fake_db):
    _bound_store(fake_db)
    desired = build_desired_direct_jobs()[0].payload
    same = {**desired, "schedule": {**desired["schedule"], "hours": list(reversed(desired["schedule"]["hours"]))}}
    cron_api["responses"] = [FakeResponse(200, {"jobs": [{"jobId": 5, **same}]})]

    result = sync_direct_automation_cron_jobs(CronJobOrgClient("cron-key", BASE))

    assert result["unchanged"] == 1
    assert len(cron_api["requests"]) == 1


def test_direct_sync_defers_past_mutation_budget(cron_api, fake_db, monkeypatch):
    monkeypatch.setattr(cron_job_org, "MAX_MUTATIONS_PER_SYNC", 1)
    stale = [{"jobId": n, "title": f"{AUTOMATION_TITLE_PREFIX}old-{n}::s::w::pro"} for n in (11, 12)]
    cron_api["responses"] = [FakeResponse(200, {"jobs": stale}), FakeResponse(204)]

    result = sync_direct_automation_cron_jobs(CronJobOrgClient("cron-key", BASE))

    assert (result["deleted"], result["deferred"]) == (1, 1)
    assert "deferred" in result["message"]


def test_lifecycle_in_direct_mode_also_syncs_store_jobs(cron_api, fake_db):
    _bound_store(fake_db)
    cron_api["responses"] = [
        FakeResponse(200, {"jobs": []}),
        FakeResponse(200, {"jobId": 41}),
        FakeResponse(200, {"jobs": [{"jobId": 41, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL}]}),
        FakeResponse(200, {"jobId": 42}),
    ]

    result = sync_scheduler_cron_job_lifecycle()

    assert result["ok"] is True
    assert result["status"] == "created"
    assert result["direct"]["created"] == 1
    put = cron_api["requests"][3]
    assert put["method"] == "PUT"
    assert put["json"]["job"]["title"] == DIRECT_TITLE


def test_lifecycle_direct_rate_limit_is_skipped(cron_api, fake_db):
    cron_api["responses"] = [FakeResponse(200, {"jobs": []})] + [FakeResponse(429, {"error": "rate limit"})] * 4

    result = sync_scheduler_cron_job_lifecycle()

    assert result["ok"] is False
    assert result["status"] == "skipped"
    assert result["message"].startswith("No scheduler cron job to delete.")


def test_direct_jobs_listing_is_cached(cron_api, fake_db):
    cron_api["responses"] = [
        FakeResponse(200, {"jobs": [
            {"jobId": 2, "title": DIRECT_TITLE, "url": "https://n8n.example.com/a", "nextExecution": 200},
            {"jobId": 1, "title": f"{AUTOMATION_TITLE_PREFIX}sub-0::s::w::turbo", "nextExecution": 100},
            {"jobId": 7, "title": SCHEDULER_JOB_TITLE, "url": TICK_URL},
        ]}),
    ]

    rows = load_direct_automation_cron_jobs()

    assert [row["jobId"] for row in rows] == [1, 2]
    assert rows[1]["storeId"] == STORE
    assert rows[1]["requestMethod"] == 1
    assert load_direct_automation_cron_jobs() == rows
    assert len(cron_api["requests"]) == 1


def test_direct_jobs_rate_limited_falls_back_to_computed_rows(cron_api, fake_db):
    _bound_store(fake_db)
    cron_api["responses"] = [FakeResponse(429, {"error": "rate limit"})] * 4

    rows = load_direct_automation_cron_jobs()

    assert [(row["jobId"], row["title"]) for row in rows] == [(-1, DIRECT_TITLE)]
    assert rows[0]["lastStatus"] == 0
    assert rows[0]["nextExecution"] > 0


def test_direct_jobs_route(cron_api, client, admin_headers, user_headers):
    cron_api["responses"] = [FakeResponse(200, {"jobs": [{"jobId": 3, "title": DIRECT_TITLE}]})]

    assert client.get("/api/admin/webhooks/cron/direct-jobs", headers=user_headers).status_code == 404
    res = client.get("/api/admin/webhooks/cron/direct-jobs", headers=admin_headers)

    assert res.status_code == 200
    assert res.json()["rows"][0]["webhookConfigId"] == "wh-1"


def test_direct_jobs_route_upstream_error(cron_api, client, admin_headers):
    cron_api["responses"] = [FakeResponse(500, {"message": "down"})]

    res = client.get("/api/admin/webhooks/cron/direct-jobs?force=true", headers=admin_headers)

    assert res.status_code == 502
    assert res.json()["code"] == "CRON_JOB_ORG_ERROR"
