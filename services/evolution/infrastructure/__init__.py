# Infrastructure Layer
from .uow import (
    UnitOfWork,
    ConfigurationRepository,
    SnapshotRepository,
    ProposalRepository,
    OutcomeRepository,
    ChannelRepository,
    AuditLogger,
    create_uow_provider
)
