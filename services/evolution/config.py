"""
Soul Evolution Configuration
Single source of truth for environment settings, thresholds & policy weights
"""
import os


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


# =========================
# Environment
# =========================

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./soul_evolution.db")

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_API_URL = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")

EMAIL_API_URL = os.getenv("EMAIL_API_URL")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY")
EMAIL_SENDER = os.getenv("EMAIL_SENDER", "soul@localhost")

# Public base URL used to build resolution links in e-mails
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

REFLECTION_URL = os.getenv("REFLECTION_URL")

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")

# inline | celery
DISPATCH_MODE = os.getenv("DISPATCH_MODE", "inline")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")
JSON_LOGS = os.getenv("JSON_LOGS", "false").lower() == "true"

HTTP_TIMEOUT_SECONDS = _env_float("SOUL_HTTP_TIMEOUT_SECONDS", 10.0)

# =========================
# Proposal lifecycle
# =========================

PROPOSAL_POLICY = {
    "ttl_hours": _env_int("SOUL_PROPOSAL_TTL_HOURS", 72),

    # gate
    "max_pending_proposals": _env_int("SOUL_MAX_PENDING_PROPOSALS", 5),
    "max_proposals_per_week": _env_int("SOUL_MAX_PROPOSALS_PER_WEEK", 10),
    "similarity_threshold": _env_float("SOUL_SIMILARITY_THRESHOLD", 0.85),
    "similarity_lookback_days": _env_int("SOUL_SIMILARITY_LOOKBACK_DAYS", 30),
    "similarity_recent_limit": _env_int("SOUL_SIMILARITY_RECENT_LIMIT", 20),

    # apply
    "apply_max_attempts": _env_int("SOUL_APPLY_MAX_ATTEMPTS", 3),
    "apply_backoff_seconds": _env_float("SOUL_APPLY_BACKOFF_SECONDS", 0.05),

    # a channel that loses the resolution race waits this long for the
    # winner's approved → applied write before reporting
    "settle_timeout_seconds": _env_float("SOUL_SETTLE_TIMEOUT_SECONDS", 3.0),
    "settle_poll_seconds": 0.02,

    # reconciliation: approved AND NOT applied older than this
    "reconciliation_grace_minutes": _env_int("SOUL_RECONCILIATION_GRACE_MINUTES", 10),

    # minimum evidence and pacing, overridable per agent
    # (SoulConfiguration.policy_overrides)
    "cooldown_between_proposals_hours": _env_float("SOUL_COOLDOWN_BETWEEN_PROPOSALS_HOURS", 4.0),
    "require_min_conversations": _env_int("SOUL_REQUIRE_MIN_CONVERSATIONS", 20),
    "require_min_sessions": _env_int("SOUL_REQUIRE_MIN_SESSIONS", 5),
    # daily | weekly | off
    "auto_reflection_schedule": os.getenv("SOUL_AUTO_REFLECTION_SCHEDULE", "weekly"),
}

# =========================
# Calibration
# =========================

CALIBRATION_POLICY = {
    "window_days": _env_int("SOUL_CALIBRATION_WINDOW_DAYS", 30),

    "base_max_per_day": _env_int("SOUL_BASE_MAX_PER_DAY", 3),
    "max_per_day_floor": _env_int("SOUL_MAX_PER_DAY_FLOOR", 1),
    "max_per_day_ceiling": _env_int("SOUL_MAX_PER_DAY_CEILING", 5),

    # approval rate over trailing resolutions
    "approval_rate_window": 10,
    "approval_rate_min_samples": 4,
    "approval_rate_threshold": 0.5,

    # expired counts as a mild negative
    "expired_weight": 0.5,

    "rejection_streak_for_cooldown": 3,
    "cooldown_hours": _env_int("SOUL_COOLDOWN_HOURS", 24),
    "approval_streak_for_raise": 3,

    "latency_ema_alpha": 0.3,

    # rubber-stamp detection, policy not invariant
    "rubber_stamp_min_approvals": _env_int("SOUL_RUBBER_STAMP_MIN_APPROVALS", 10),
    "rubber_stamp_max_seconds": _env_float("SOUL_RUBBER_STAMP_MAX_SECONDS", 60.0),
}

# =========================
# Scheduler
# =========================

SCHEDULER_POLICY = {
    "expiry_sweep_minutes": _env_int("SOUL_EXPIRY_SWEEP_MINUTES", 15),
    "reconciliation_minutes": _env_int("SOUL_RECONCILIATION_MINUTES", 60),
    "reflection_day_of_week": os.getenv("SOUL_REFLECTION_DAY_OF_WEEK", "mon"),
    # daily-schedule agents reflect every day at the same hour
    "reflection_hour": _env_int("SOUL_REFLECTION_HOUR", 3),
    # stagger reflections over an hour
    "reflection_jitter_seconds": _env_int("SOUL_REFLECTION_JITTER_SECONDS", 3600),
    "reflection_window_days": _env_int("SOUL_REFLECTION_WINDOW_DAYS", 7),
    "daily_reflection_window_days": _env_int("SOUL_DAILY_REFLECTION_WINDOW_DAYS", 1),
}

# =========================
# Soul fields
# =========================

DEFAULT_PROTECTED_FIELDS = ["never_do", "blocked_topics", "escalation_triggers"]
