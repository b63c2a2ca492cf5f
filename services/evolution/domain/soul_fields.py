"""
Soul Fields - Чистый доменный слой
==================================
Closed set of configuration fields and the mutators proposals may apply
to them. No session, no I/O: mutators work on a plain dict copy of
Configuration.fields.
"""
import enum
import re
from typing import Callable

from exceptions import UnsupportedChange


class SoulField(str, enum.Enum):
    # identity anchors
    NAME = "name"
    TAGLINE = "tagline"
    TRAITS = "traits"
    CORE_VALUES = "core_values"
    NEVER_DO = "never_do"
    ESCALATION_TRIGGERS = "escalation_triggers"
    BLOCKED_TOPICS = "blocked_topics"

    # execution preferences
    ALWAYS_DO = "always_do"
    COMMUNICATION_STYLE = "communication_style"
    TONE_GUIDELINES = "tone_guidelines"
    GREETING_STYLE = "greeting_style"
    CLOSING_STYLE = "closing_style"
    EMOJI_USAGE = "emoji_usage"

    # knowledge
    FAQ_ENTRIES = "faq_entries"


class FieldKind(str, enum.Enum):
    LIST = "list"
    TEXT = "text"
    FAQ = "faq"


class ChangeKind(str, enum.Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"
    ADD_FAQ = "add_faq"


FIELD_KINDS = {
    SoulField.NAME: FieldKind.TEXT,
    SoulField.TAGLINE: FieldKind.TEXT,
    SoulField.TRAITS: FieldKind.LIST,
    SoulField.CORE_VALUES: FieldKind.LIST,
    SoulField.NEVER_DO: FieldKind.LIST,
    SoulField.ESCALATION_TRIGGERS: FieldKind.LIST,
    SoulField.BLOCKED_TOPICS: FieldKind.LIST,
    SoulField.ALWAYS_DO: FieldKind.LIST,
    SoulField.COMMUNICATION_STYLE: FieldKind.TEXT,
    SoulField.TONE_GUIDELINES: FieldKind.TEXT,
    SoulField.GREETING_STYLE: FieldKind.TEXT,
    SoulField.CLOSING_STYLE: FieldKind.TEXT,
    SoulField.EMOJI_USAGE: FieldKind.TEXT,
    SoulField.FAQ_ENTRIES: FieldKind.FAQ,
}

IDENTITY_ANCHORS = frozenset({
    SoulField.NAME,
    SoulField.TAGLINE,
    SoulField.TRAITS,
    SoulField.CORE_VALUES,
})

# change kinds each field kind accepts
SUPPORTED_CHANGES = {
    FieldKind.LIST: frozenset({ChangeKind.ADD, ChangeKind.MODIFY, ChangeKind.REMOVE}),
    FieldKind.TEXT: frozenset({ChangeKind.MODIFY, ChangeKind.REMOVE}),
    FieldKind.FAQ: frozenset({ChangeKind.ADD_FAQ, ChangeKind.REMOVE}),
}

FAQ_PATTERN = re.compile(r"Q:\s*(.+?)\s*\|\s*A:\s*(.+)", re.DOTALL)

Mutator = Callable[[dict], None]


def parse_field(target_field: str) -> SoulField:
    try:
        return SoulField(target_field)
    except ValueError:
        raise UnsupportedChange(
            target_field=target_field,
            change_kind="",
            reason=f"Unknown soul field '{target_field}'"
        )


def parse_faq(value: str) -> dict:
    """'Q: ... | A: ...' → {"q": ..., "a": ...}"""
    match = FAQ_PATTERN.search(value or "")
    if not match:
        raise UnsupportedChange(
            target_field=SoulField.FAQ_ENTRIES.value,
            change_kind=ChangeKind.ADD_FAQ.value,
            reason="FAQ value must look like 'Q: <question> | A: <answer>'"
        )
    return {"q": match.group(1).strip(), "a": match.group(2).strip()}


def validate_change(target_field: str, change_kind: str, value: str) -> None:
    """
    Проверка что change_kind поддерживается для поля.

    Raises:
        UnsupportedChange: неизвестное поле, неподходящий change_kind или
            FAQ без формата 'Q: | A:'
    """
    field = parse_field(target_field)
    try:
        kind = ChangeKind(change_kind)
    except ValueError:
        raise UnsupportedChange(target_field, change_kind, f"Unknown change kind '{change_kind}'")

    field_kind = FIELD_KINDS[field]
    if kind not in SUPPORTED_CHANGES[field_kind]:
        raise UnsupportedChange(
            target_field,
            change_kind,
            f"Field '{field.value}' ({field_kind.value}) does not support '{kind.value}'"
        )

    if kind == ChangeKind.ADD_FAQ:
        parse_faq(value)
    elif kind in (ChangeKind.ADD, ChangeKind.MODIFY) and not (value or "").strip():
        raise UnsupportedChange(target_field, change_kind, "Proposed value is empty")


def build_mutator(
    target_field: str,
    change_kind: str,
    value: str,
    current_value: str | None = None
) -> Mutator:
    """
    Mutator that writes the resolved value into `target_field`.

    The returned callable edits the dict it receives in place; the
    Configuration Store hands it a deep copy.
    """
    validate_change(target_field, change_kind, value)
    field = SoulField(target_field)
    kind = ChangeKind(change_kind)
    field_kind = FIELD_KINDS[field]
    key = field.value

    def mutate(fields: dict) -> None:
        if field_kind == FieldKind.LIST:
            items = list(fields.get(key) or [])
            if kind == ChangeKind.ADD:
                items.append(value)
            elif kind == ChangeKind.MODIFY:
                if current_value is not None and current_value in items:
                    items[items.index(current_value)] = value
                else:
                    items.append(value)
            else:
                needle = current_value if current_value is not None else value
                items = [item for item in items if item != needle]
            fields[key] = items

        elif field_kind == FieldKind.TEXT:
            fields[key] = value if kind == ChangeKind.MODIFY else None

        else:
            entries = list(fields.get(key) or [])
            if kind == ChangeKind.ADD_FAQ:
                entries.append(parse_faq(value))
            else:
                question = current_value if current_value is not None else value
                entries = [entry for entry in entries if entry.get("q") != question]
            fields[key] = entries

    return mutate


# =============================================================================
# Operator review payload
# =============================================================================

def risk_level(target_field: str, change_kind: str) -> str:
    field = SoulField(target_field)
    if field in IDENTITY_ANCHORS:
        return "high"
    if ChangeKind(change_kind) in (ChangeKind.MODIFY, ChangeKind.REMOVE):
        return "medium"
    return "low"


def review_checklist(
    target_field: str,
    change_kind: str,
    telemetry_summary: str | None = None
) -> list[str]:
    """Short hints shown to the human next to Approve/Reject"""
    field = SoulField(target_field)
    kind = ChangeKind(change_kind)
    checklist = []

    if field in IDENTITY_ANCHORS:
        checklist.append("Identity anchor: confirm the agent should really change who it is.")
    if kind == ChangeKind.REMOVE:
        checklist.append("Removal: confirm nothing else relies on this entry.")
    elif kind == ChangeKind.MODIFY:
        checklist.append("Compare the current and proposed wording side by side.")
    elif kind == ChangeKind.ADD_FAQ:
        checklist.append("Check the answer is factually correct for your business.")
    else:
        checklist.append("Check the new rule does not contradict existing ones.")

    if telemetry_summary:
        checklist.append(f"Review drift context: {telemetry_summary}")

    return checklist
