# Domain Layer
from .proposal_state import (
    ProposalStatus,
    Decision,
    TERMINAL_STATES,
    validate_transition,
)
from .soul_fields import (
    SoulField,
    ChangeKind,
    build_mutator,
    validate_change,
)
from .evolution_policy import (
    REFLECTION_SCHEDULES,
    effective_policy,
    normalize_overrides,
)
