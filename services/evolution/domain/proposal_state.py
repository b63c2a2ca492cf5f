"""
Proposal State - Чистый доменный слой
=====================================
Никаких session, commit, async, логов, side-effects.
Только состояния proposal и разрешённые переходы.
"""
import enum


class ProposalStatus(str, enum.Enum):
    """
    pending → approved → applied
    pending → rejected
    pending → expired
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    APPLIED = "applied"


class Decision(str, enum.Enum):
    """Что решил человек (или sweep)"""
    APPROVE = "approve"
    EDIT = "edit"
    REJECT = "reject"
    EXPIRE = "expire"


# Терминальные состояния - из которых нельзя выйти
TERMINAL_STATES = frozenset({
    ProposalStatus.REJECTED,
    ProposalStatus.EXPIRED,
    ProposalStatus.APPLIED,
})

ALLOWED_TRANSITIONS = {
    ProposalStatus.PENDING: frozenset({
        ProposalStatus.APPROVED,
        ProposalStatus.REJECTED,
        ProposalStatus.EXPIRED,
    }),
    ProposalStatus.APPROVED: frozenset({ProposalStatus.APPLIED}),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.EXPIRED: frozenset(),
    ProposalStatus.APPLIED: frozenset(),
}

# status a won CAS writes for each decision
DECISION_TARGET = {
    Decision.APPROVE: ProposalStatus.APPROVED,
    Decision.EDIT: ProposalStatus.APPROVED,
    Decision.REJECT: ProposalStatus.REJECTED,
    Decision.EXPIRE: ProposalStatus.EXPIRED,
}


def can_transition(from_state, to_state) -> bool:
    """Проверка перехода по таблице ALLOWED_TRANSITIONS"""
    return ProposalStatus(to_state) in ALLOWED_TRANSITIONS[ProposalStatus(from_state)]


def validate_transition(from_state, to_state) -> None:
    """
    Raises:
        ValueError: при запрещённом переходе (no-op, из терминального, назад)
    """
    from_state = ProposalStatus(from_state)
    to_state = ProposalStatus(to_state)

    if from_state == to_state:
        raise ValueError(f"No-op transition forbidden: proposal already '{from_state.value}'")

    if from_state in TERMINAL_STATES:
        raise ValueError(
            f"Cannot transition from terminal state '{from_state.value}'. "
            f"Terminal states: {sorted(s.value for s in TERMINAL_STATES)}"
        )

    if not can_transition(from_state, to_state):
        raise ValueError(
            f"Transition '{from_state.value}' → '{to_state.value}' is not allowed"
        )


def is_terminal(status) -> bool:
    return ProposalStatus(status) in TERMINAL_STATES


def outcome_for(decision: Decision) -> str:
    """Decision → ProposalOutcome.outcome value (calibration signal)"""
    return {
        Decision.APPROVE: "approved",
        Decision.EDIT: "edited",
        Decision.REJECT: "rejected",
        Decision.EXPIRE: "expired",
    }[Decision(decision)]


def decision_from_status(status) -> Decision | None:
    """Reverse mapping for already-resolved proposals (lost CAS)"""
    status = ProposalStatus(status)
    if status in (ProposalStatus.APPROVED, ProposalStatus.APPLIED):
        return Decision.APPROVE
    if status == ProposalStatus.REJECTED:
        return Decision.REJECT
    if status == ProposalStatus.EXPIRED:
        return Decision.EXPIRE
    return None
