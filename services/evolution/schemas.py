from pydantic import BaseModel, Field
from typing import Literal, Optional, List, Dict, Any
from datetime import datetime


# =============================================================================
# Drafts (Reflection Producer → Gate)
# =============================================================================

class ProposalDraft(BaseModel):
    """
    Candidate single-field change drafted by the reflection producer
    (scheduled) or by a live interaction.
    """
    agent_id: str
    target_field: str
    change_kind: Literal["add", "modify", "remove", "add_faq"]
    proposed_value: str
    current_value: Optional[str] = None
    reason: str
    confidence: Literal["high", "medium", "low"]
    trigger_type: Literal["reflection", "live_interaction"] = "live_interaction"

    # evidence for the human reviewer (drift / telemetry context)
    telemetry_summary: Optional[str] = None

    # evidence behind the draft, checked against require_min_*
    conversation_count: int = Field(default=0, ge=0)
    session_count: int = Field(default=0, ge=0)


class DraftSubmitRequest(BaseModel):
    target_field: str
    change_kind: Literal["add", "modify", "remove", "add_faq"]
    proposed_value: str
    current_value: Optional[str] = None
    reason: str
    confidence: Literal["high", "medium", "low"]
    telemetry_summary: Optional[str] = None
    conversation_count: int = Field(default=0, ge=0)
    session_count: int = Field(default=0, ge=0)


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationBootstrapRequest(BaseModel):
    organization_id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    protected_fields: Optional[List[str]] = None
    evolution_enabled: bool = True
    policy_overrides: Dict[str, Any] = Field(default_factory=dict)


class ConfigurationResponse(BaseModel):
    agent_id: str
    organization_id: str
    version: int
    fields: Dict[str, Any]
    protected_fields: List[str]
    evolution_enabled: bool
    policy_overrides: Dict[str, Any] = Field(default_factory=dict)
    last_updated_at: datetime
    last_updated_by: Optional[str] = None

    class Config:
        from_attributes = True


class SnapshotResponse(BaseModel):
    agent_id: str
    version: int
    fields: Dict[str, Any]
    protected_fields: List[str]
    change_type: str
    causing_proposal_id: Optional[str] = None
    rollback_target_version: Optional[int] = None
    changed_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SettingsUpdateRequest(BaseModel):
    """Operator settings; not a versioned change"""
    evolution_enabled: Optional[bool] = None
    policy_overrides: Optional[Dict[str, Any]] = None


class RollbackRequest(BaseModel):
    version: int
    requested_by: str = "operator"


class RollbackResponse(BaseModel):
    agent_id: str
    restored_version: int
    new_version: int


# =============================================================================
# Proposals
# =============================================================================

class ProposalResponse(BaseModel):
    id: str
    agent_id: str
    organization_id: str
    status: str
    target_field: str
    change_kind: str
    current_value: Optional[str] = None
    proposed_value: str
    edited_value: Optional[str] = None
    human_edited: bool = False
    reason: str
    confidence: str
    trigger_type: str
    risk_level: str
    telemetry_summary: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_via: Optional[str] = None
    applied_at: Optional[datetime] = None
    applied_version: Optional[int] = None
    apply_attempts: int = 0
    last_apply_error: Optional[str] = None
    web_resolution_token: Optional[str] = None

    class Config:
        from_attributes = True


class AdmissionResponse(BaseModel):
    admitted: bool
    reason: Optional[str] = None
    detail: Optional[str] = None
    proposal: Optional[ProposalResponse] = None


class ResolveRequest(BaseModel):
    """Web operator channel resolution"""
    action: Literal["approve", "reject", "edit"]
    resolution_token: str
    edited_value: Optional[str] = None


class ResolutionResponse(BaseModel):
    proposal_id: str
    decision: str
    status: str
    already_resolved: bool
    message: str
    resolved_via: Optional[str] = None
    resolved_at: Optional[datetime] = None
    applied_version: Optional[int] = None


class CommandResponse(BaseModel):
    """Chat command result (history listing, rollback)"""
    command: str
    agent_id: str
    message: str
    restored_version: Optional[int] = None
    new_version: Optional[int] = None
    rollback_versions: List[int] = Field(default_factory=list)


class DeliveryResponse(BaseModel):
    channel: str
    delivered: bool
    attempts: int
    external_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditEventResponse(BaseModel):
    event_name: str
    actor: str
    decision: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class ProposalTrailResponse(BaseModel):
    """Operator view: where the proposal was delivered and what happened to it"""
    proposal_id: str
    deliveries: List[DeliveryResponse]
    audit: List[AuditEventResponse]


# =============================================================================
# Calibration / channels
# =============================================================================

class BudgetResponse(BaseModel):
    max_per_day: int
    cooldown_until: Optional[datetime] = None
    approval_rate: Optional[float] = None
    rubber_stamp_suspected: bool
    avg_resolution_seconds: Optional[float] = None
    sample_size: int = 0


class ChannelRegisterRequest(BaseModel):
    channel: Literal["telegram", "webhook", "email"]
    address: str
    enabled: bool = True


class ChannelResponse(BaseModel):
    id: str
    organization_id: str
    channel: str
    address: str
    enabled: bool

    class Config:
        from_attributes = True
