import os


def enabled(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("true", "1", "yes")


def request_logging_enabled() -> bool:
    return enabled("LISTFLOW_REQUEST_LOGGING")


def scheduler_enabled() -> bool:
    return enabled("LISTFLOW_SCHEDULER_ENABLED")
