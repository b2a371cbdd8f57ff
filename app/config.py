"""Core application configuration & tunable dispatch rules.

Everything that may be tuned per deployment (tick interval, batch cap,
mail transport, admin token) is centralized here so it can be adjusted
without diving into service logic. Values are read from environment
variables once at import time; the dicts stay mutable so tests can
monkeypatch individual keys.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


# -------------------------------- Database -------------------------------- #
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./dispatch.db")

# -------------------------------- Dispatch -------------------------------- #
DISPATCH_SETTINGS: dict[str, int | float | bool] = {
	# Timer period between ticks. The reference behaviour is once per minute.
	"interval_seconds": float(os.getenv("DISPATCH_INTERVAL_SECONDS", "60")),
	# Max tasks claimed per tick (backpressure on the send capability).
	"batch_limit": int(os.getenv("DISPATCH_BATCH_LIMIT", "50")),
	# Start the timer thread in the application lifespan.
	"enabled": _env_bool("DISPATCH_ENABLED", True),
	# Default age threshold for the administrative stale-processing requeue.
	"stale_processing_minutes": int(os.getenv("DISPATCH_STALE_PROCESSING_MINUTES", "30")),
}

# ---------------------------------- Mail ---------------------------------- #
MAIL_SETTINGS: dict[str, str | int | float | None] = {
	"backend": os.getenv("MAIL_BACKEND", "mock"),  # mock | smtp
	"smtp_host": os.getenv("SMTP_HOST", ""),
	"smtp_port": int(os.getenv("SMTP_PORT", "587")),
	"smtp_user": os.getenv("SMTP_USER") or None,
	"smtp_password": os.getenv("SMTP_PASSWORD") or None,
	"sender_address": os.getenv("MAIL_SENDER_ADDRESS", "no-reply@localhost"),
	"default_subject": os.getenv("MAIL_DEFAULT_SUBJECT", "Your Scheduled Email"),
	"timeout_seconds": float(os.getenv("SMTP_TIMEOUT_SECONDS", "20")),
	# Mock transport knobs (local development only)
	"mock_failure_rate": float(os.getenv("MOCK_MAIL_FAILURE_RATE", "0.05")),
	"mock_latency_seconds": float(os.getenv("MOCK_MAIL_LATENCY_SECONDS", "0.05")),
}

# ------------------------------ Administration ---------------------------- #
# Bearer token guarding manual tick / recovery endpoints. Unset disables them.
ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN") or None

# --------------------------------- Logging -------------------------------- #
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: str | None = os.getenv("LOG_FILE", "logs/app.log") or None

__all__ = [
	"DATABASE_URL",
	"DISPATCH_SETTINGS",
	"MAIL_SETTINGS",
	"ADMIN_API_TOKEN",
	"LOG_LEVEL",
	"LOG_FILE",
]
