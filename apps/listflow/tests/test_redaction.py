from apps.listflow.services.webhooks.redaction import REDACTED, redact_sensitive


def test_nested_secrets_are_redacted():
    value = {
        "Authorization": "Bearer abc",
        "x-api-key": "k",
        "payload": {"client_id": "store-1", "refresh_token": "t", "inner": {"Password": "p"}},
        "count": 3,
    }
    out = redact_sensitive(value)

    assert out["Authorization"] == REDACTED
    assert out["x-api-key"] == REDACTED
    assert out["payload"]["client_id"] == "store-1"
    assert out["payload"]["refresh_token"] == REDACTED
    assert out["payload"]["inner"]["Password"] == REDACTED
    assert out["count"] == 3
    # input untouched
    assert value["Authorization"] == "Bearer abc"


def test_non_dicts_pass_through():
    assert redact_sensitive("secret") == "secret"
    assert redact_sensitive(None) is None
    assert redact_sensitive([{"token": "x"}]) == [{"token": "x"}]
