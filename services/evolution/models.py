from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import Column, String, DateTime, Text, Integer, JSON, Boolean, Float, UniqueConstraint, Index
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.types import TypeDecorator

from database import Base
from domain.proposal_state import ProposalStatus


class UTCDateTime(TypeDecorator):
    """
    DateTime that always round-trips as timezone-aware UTC.

    SQLite drops tzinfo on storage; PostgreSQL keeps it. Python-side
    comparisons must never mix naive and aware values.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PROPOSAL LIFECYCLE - enums
# =============================================================================

class ChangeType(str, enum.Enum):
    INITIAL = "initial"
    PROPOSAL_APPLIED = "proposal_applied"
    ROLLBACK = "rollback"


class OutcomeKind(str, enum.Enum):
    APPROVED = "approved"
    EDITED = "edited"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Channel(str, enum.Enum):
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"
    EMAIL = "email"
    # operator dashboard / API, always present
    WEB = "web"


# =============================================================================
# CONFIGURATION STORE
# =============================================================================

class SoulConfiguration(Base):
    """Live soul configuration, one row per agent"""
    __tablename__ = "soul_configurations"

    agent_id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)

    # {"always_do": [...], "communication_style": "...", "faq_entries": [{"q": .., "a": ..}]}
    fields = Column(JSON, nullable=False, default=dict)
    protected_fields = Column(JSON, nullable=False, default=list)

    # scheduled reflection opt-out
    evolution_enabled = Column(Boolean, nullable=False, default=True)

    # per-agent PROPOSAL_POLICY overrides, see domain.evolution_policy
    policy_overrides = Column(JSON, nullable=False, default=dict)

    last_updated_at = Column(UTCDateTime, nullable=False)
    last_updated_by = Column(String, nullable=True)


class ConfigurationSnapshot(Base):
    """Append-only history, one row per version. Never updated."""
    __tablename__ = "soul_configuration_snapshots"
    __table_args__ = (
        UniqueConstraint("agent_id", "version", name="uq_snapshot_agent_version"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    agent_id = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False)

    fields = Column(JSON, nullable=False)
    protected_fields = Column(JSON, nullable=False)

    change_type = Column(String, nullable=False)  # initial, proposal_applied, rollback
    causing_proposal_id = Column(String, nullable=True)
    rollback_target_version = Column(Integer, nullable=True)
    changed_by = Column(String, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)


# =============================================================================
# PROPOSALS
# =============================================================================

class SoulProposal(Base):
    __tablename__ = "soul_proposals"
    __table_args__ = (
        Index("ix_soul_proposals_agent_status", "agent_id", "status"),
        Index("ix_soul_proposals_status_expires", "status", "expires_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    agent_id = Column(String, nullable=False)
    organization_id = Column(String, nullable=False, index=True)

    _status = Column("status", String, nullable=False, default=ProposalStatus.PENDING.value)

    # 🔒 PROTECTION: Direct status assignment is FORBIDDEN
    # Status only moves through compare-and-set in ProposalRepository
    @hybrid_property
    def status(self):
        """Read-only status - use ProposalLifecycleManager to change"""
        return self._status

    @status.setter
    def status(self, value):
        raise RuntimeError(
            f"🚫 DIRECT STATUS ASSIGNMENT BLOCKED!\n"
            f"   Attempted: proposal.status = '{value}'\n"
            f"   Use: ProposalLifecycleManager.approve/reject/expire_sweep"
        )

    target_field = Column(String, nullable=False)
    change_kind = Column(String, nullable=False)
    current_value = Column(Text, nullable=True)
    proposed_value = Column(Text, nullable=False)
    edited_value = Column(Text, nullable=True)
    # human supplied a value different from the draft (editAndApprove)
    human_edited = Column(Boolean, nullable=False, default=False)

    reason = Column(Text, nullable=False)
    confidence = Column(String, nullable=False)
    trigger_type = Column(String, nullable=False)
    risk_level = Column(String, nullable=False, default="low")
    telemetry_summary = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)

    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_via = Column(String, nullable=True)
    resolution_token_used = Column(String, nullable=True)
    # {"telegram": "tok...", "email": "tok...", "web": "tok..."}
    resolution_tokens = Column(JSON, nullable=False, default=dict)

    applied_at = Column(UTCDateTime, nullable=True)
    applied_version = Column(Integer, nullable=True)
    apply_attempts = Column(Integer, nullable=False, default=0)
    last_apply_error = Column(Text, nullable=True)

    @property
    def resolved_value(self) -> str:
        """Value that lands in the configuration: human edit wins over the draft"""
        return self.edited_value if self.edited_value is not None else self.proposed_value

    @property
    def web_resolution_token(self) -> str | None:
        """Operator dashboard token (the `web` channel)"""
        return (self.resolution_tokens or {}).get("web")


class ResolutionToken(Base):
    """token → proposal lookup for channels that only carry the token"""
    __tablename__ = "soul_resolution_tokens"

    token = Column(String, primary_key=True)
    proposal_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)


# =============================================================================
# CALIBRATION
# =============================================================================

class ProposalOutcome(Base):
    """Append-only outcome history, source of truth for calibration"""
    __tablename__ = "soul_proposal_outcomes"
    __table_args__ = (
        Index("ix_soul_outcomes_agent_recorded", "agent_id", "recorded_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    proposal_id = Column(String, nullable=False, unique=True)
    agent_id = Column(String, nullable=False)
    outcome = Column(String, nullable=False)  # approved, edited, rejected, expired
    latency_seconds = Column(Float, nullable=True)
    resolved_via = Column(String, nullable=True)
    recorded_at = Column(UTCDateTime, nullable=False)


class CalibrationRecord(Base):
    """Derived cache, recomputed from ProposalOutcome on every record_outcome"""
    __tablename__ = "soul_calibration_records"

    agent_id = Column(String, primary_key=True)
    approved_count = Column(Integer, nullable=False, default=0)
    edited_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    expired_count = Column(Integer, nullable=False, default=0)
    avg_resolution_seconds = Column(Float, nullable=True)
    max_per_day = Column(Integer, nullable=False)
    cooldown_until = Column(UTCDateTime, nullable=True)
    rubber_stamp_suspected = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, nullable=False)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationChannel(Base):
    """Where the responsible human of an organization is reachable"""
    __tablename__ = "soul_notification_channels"
    __table_args__ = (
        UniqueConstraint("organization_id", "channel", name="uq_org_channel"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    organization_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)  # telegram, webhook, email
    address = Column(String, nullable=False)  # chat id, URL, e-mail
    enabled = Column(Boolean, nullable=False, default=True)


class DeliveryLog(Base):
    __tablename__ = "soul_delivery_log"

    id = Column(String, primary_key=True, default=_new_id)
    proposal_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)
    delivered = Column(Boolean, nullable=False)
    attempts = Column(Integer, nullable=False)
    external_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)


# =============================================================================
# AUDIT
# =============================================================================

class AuditEvent(Base):
    """Append-only trust/audit trail for every lifecycle step"""
    __tablename__ = "soul_audit_events"

    id = Column(String, primary_key=True, default=_new_id)
    event_name = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=False, index=True)
    organization_id = Column(String, nullable=True)
    proposal_id = Column(String, nullable=True, index=True)
    actor = Column(String, nullable=False)
    decision = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False)
