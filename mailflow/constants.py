"""Default values shared across mailflow."""

from __future__ import annotations

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MAX_DELAY = 300.0

DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_RETENTION_DAYS = 7
DEFAULT_PURGE_INTERVAL = 24 * 60 * 60.0
DEFAULT_MAX_STEPS_PER_TICK = 50
DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_LEASE_TIMEOUT = 5 * 60.0

DEFAULT_EMAIL_TIMEOUT = 30.0
DEFAULT_WEBHOOK_TIMEOUT = 10.0

DEFAULT_FROM_NAME = "Your Company"
DEFAULT_FROM_EMAIL = "noreply@yourcompany.com"

RECENT_EXECUTIONS_LIMIT = 10

DELAY_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}
