"""
Evolution Policy - per-agent overrides поверх PROPOSAL_POLICY
=============================================================
Чистые функции: никаких session, логов, side-effects.

Overrides live on SoulConfiguration.policy_overrides. Unknown keys are
dropped; a value of the wrong type or out of range falls back to the
service default, so a bad override never disables a guard.
"""

REFLECTION_SCHEDULES = ("daily", "weekly", "off")

# key → minimum accepted value
_POSITIVE_INT_KEYS = {
    "max_pending_proposals": 1,
    "max_proposals_per_week": 1,
}

_NON_NEGATIVE_NUMBER_KEYS = (
    "cooldown_between_proposals_hours",
    "require_min_conversations",
    "require_min_sessions",
)

OVERRIDABLE_KEYS = frozenset(
    list(_POSITIVE_INT_KEYS) + list(_NON_NEGATIVE_NUMBER_KEYS) + ["auto_reflection_schedule"]
)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_overrides(overrides: dict | None) -> dict:
    """Keep only valid overrides; everything else falls back to defaults"""
    normalized = {}
    for key, value in (overrides or {}).items():
        if key in _POSITIVE_INT_KEYS:
            if _is_number(value) and int(value) >= _POSITIVE_INT_KEYS[key]:
                normalized[key] = int(value)
        elif key in _NON_NEGATIVE_NUMBER_KEYS:
            if _is_number(value) and value >= 0:
                normalized[key] = int(value) if key.startswith("require_") else float(value)
        elif key == "auto_reflection_schedule":
            if value in REFLECTION_SCHEDULES:
                normalized[key] = value
    return normalized


def effective_policy(base: dict, overrides: dict | None) -> dict:
    """Service policy with the agent's valid overrides applied"""
    return {**base, **normalize_overrides(overrides)}
