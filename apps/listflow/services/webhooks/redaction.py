from typing import Any

REDACTED = "[REDACTED]"

SECRET_KEY_FRAGMENTS = ("authorization", "token", "secret", "password", "cookie", "api-key", "apikey")


def should_redact(key: str) -> bool:
    lower = key.lower()
    return any(fragment in lower for fragment in SECRET_KEY_FRAGMENTS)


def redact_sensitive(value: Any) -> Any:
    """Replaces secret-looking keys at any depth of a dict."""
    if not isinstance(value, dict):
        return value
    out = {}
    for key, item in value.items():
        if should_redact(str(key)):
            out[key] = REDACTED
        elif isinstance(item, dict):
            out[key] = redact_sensitive(item)
        else:
            out[key] = item
    return out
