"""Cache key layout — one builder per entity type."""

ACTIVE_ALERTS_KEY = "active_alerts"


def price_key(kind: str, search_hash: str) -> str:
    return f"price:{kind}:{search_hash}"


def history_key(kind: str, search_hash: str) -> str:
    return f"history:{kind}:{search_hash}"


def alert_key(alert_id: str) -> str:
    return f"alert:{alert_id}"


def user_alerts_key(user_id: str) -> str:
    return f"user_alerts:{user_id}"


def job_key(job_id: str) -> str:
    return f"update_job:{job_id}"


# Patterns for SCAN-style listing
HISTORY_PATTERN = "history:*"
ALERT_PATTERN = "alert:*"
USER_ALERTS_PATTERN = "user_alerts:*"
JOB_PATTERN = "update_job:*"
