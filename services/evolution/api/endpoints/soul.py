"""
Soul Evolution API Controller

Thin wrapper над EvolutionService. Domain exceptions are mapped to HTTP
through EXCEPTION_TO_STATUS; gate rejections and lost resolution races are
regular 200 responses.

Author: Soul Evolution Team
"""
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse

from channel_adapters import render_confirmation_page
from exceptions import BaseEvolutionException, EXCEPTION_TO_STATUS
from notification_fanout import CommandOutcome
from schemas import (
    AdmissionResponse,
    AuditEventResponse,
    BudgetResponse,
    ChannelRegisterRequest,
    ChannelResponse,
    CommandResponse,
    ConfigurationBootstrapRequest,
    ConfigurationResponse,
    DeliveryResponse,
    DraftSubmitRequest,
    ProposalDraft,
    ProposalResponse,
    ProposalTrailResponse,
    ResolutionResponse,
    ResolveRequest,
    RollbackRequest,
    RollbackResponse,
    SettingsUpdateRequest,
    SnapshotResponse,
)
from service import EvolutionService, get_service


router = APIRouter(prefix="/soul", tags=["Soul Evolution"])


def map_exception_to_http(exc: BaseEvolutionException) -> HTTPException:
    """
    Map domain exception to HTTP response.

    Args:
        exc: Domain exception from service layer

    Returns:
        HTTPException with proper status code and structured error payload
    """
    status_code = EXCEPTION_TO_STATUS.get(type(exc), 500)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


# =============================================================================
# Configuration
# =============================================================================

@router.post("/agents/{agent_id}/configuration", response_model=ConfigurationResponse, status_code=201)
async def bootstrap_configuration(
    agent_id: str,
    payload: ConfigurationBootstrapRequest,
    service: EvolutionService = Depends(get_service)
):
    try:
        return await service.bootstrap_configuration(
            agent_id,
            payload.organization_id,
            payload.fields,
            protected_fields=payload.protected_fields,
            evolution_enabled=payload.evolution_enabled,
            policy_overrides=payload.policy_overrides,
        )
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)


@router.get("/agents/{agent_id}/configuration", response_model=ConfigurationResponse)
async def get_active_configuration(agent_id: str, service: EvolutionService = Depends(get_service)):
    try:
        return await service.get_active_configuration(agent_id)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)


@router.put("/agents/{agent_id}/settings", response_model=ConfigurationResponse)
async def update_settings(
    agent_id: str,
    payload: SettingsUpdateRequest,
    service: EvolutionService = Depends(get_service)
):
    """
    Evolution toggle and per-agent policy overrides. Does not create a
    new configuration version.

    Invalid override entries are dropped, the service default applies.
    """
    try:
        return await service.update_settings(
            agent_id,
            evolution_enabled=payload.evolution_enabled,
            policy_overrides=payload.policy_overrides,
        )
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)


@router.get("/agents/{agent_id}/history", response_model=List[SnapshotResponse])
async def get_history(
    agent_id: str,
    limit: Optional[int] = None,
    service: EvolutionService = Depends(get_service)
):
    try:
        return await service.get_history(agent_id, limit=limit)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)


@router.post("/agents/{agent_id}/rollback", response_model=RollbackResponse)
async def rollback(
    agent_id: str,
    payload: RollbackRequest,
    service: EvolutionService = Depends(get_service)
):
    """
    Restore the fields of `version` as a new version.

    ## Error Codes
    - 404: agent or version not found
    - 409: configuration kept changing, retries exhausted
    """
    try:
        new_version = await service.rollback(agent_id, payload.version, requested_by=payload.requested_by)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return RollbackResponse(agent_id=agent_id, restored_version=payload.version, new_version=new_version)


# =============================================================================
# Proposals
# =============================================================================

@router.post("/agents/{agent_id}/proposals", response_model=AdmissionResponse)
async def submit_draft(
    agent_id: str,
    payload: DraftSubmitRequest,
    service: EvolutionService = Depends(get_service)
):
    """Live-interaction trigger. A gate rejection is a normal response."""
    draft = ProposalDraft(agent_id=agent_id, trigger_type="live_interaction", **payload.model_dump())
    try:
        result = await service.submit_draft(draft)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)

    return AdmissionResponse(
        admitted=result.admitted,
        reason=result.reason.value if result.reason else None,
        detail=result.detail,
        proposal=ProposalResponse.model_validate(result.proposal) if result.proposal else None,
    )


@router.get("/agents/{agent_id}/proposals/pending", response_model=List[ProposalResponse])
async def list_pending(agent_id: str, service: EvolutionService = Depends(get_service)):
    return await service.list_pending(agent_id)


@router.get("/agents/{agent_id}/proposals", response_model=List[ProposalResponse])
async def list_proposals(
    agent_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    service: EvolutionService = Depends(get_service)
):
    try:
        return await service.list_proposals(agent_id, status=status, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail={"error": {"code": "InvalidStatus", "message": f"Unknown status '{status}'", "details": {}}})


@router.get("/proposals/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(proposal_id: str, service: EvolutionService = Depends(get_service)):
    try:
        return await service.get_proposal(proposal_id)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)


@router.get("/proposals/{proposal_id}/trail", response_model=ProposalTrailResponse)
async def get_proposal_trail(proposal_id: str, service: EvolutionService = Depends(get_service)):
    try:
        deliveries, audit = await service.get_proposal_trail(proposal_id)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return ProposalTrailResponse(
        proposal_id=proposal_id,
        deliveries=[DeliveryResponse.model_validate(row) for row in deliveries],
        audit=[AuditEventResponse.model_validate(event) for event in audit],
    )


@router.post("/proposals/{proposal_id}/resolve", response_model=ResolutionResponse)
async def resolve(
    proposal_id: str,
    payload: ResolveRequest,
    service: EvolutionService = Depends(get_service)
):
    """
    Operator (web) channel resolution.

    ## Idempotency
    A valid token on an already resolved proposal returns the real outcome
    with already_resolved = true.
    """
    try:
        outcome = await service.resolve(
            proposal_id,
            payload.action,
            payload.resolution_token,
            edited_value=payload.edited_value,
        )
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return ResolutionResponse(**outcome.to_dict())


@router.get("/resolve/{token}", response_class=HTMLResponse)
async def preview_link(token: str, action: str, service: EvolutionService = Depends(get_service)):
    """
    Approve/reject links from e-mail land here. GET never resolves: it
    renders the proposal with a confirm button that POSTs back.
    """
    try:
        proposal, _channel = await service.preview_by_token(token, action)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return HTMLResponse(render_confirmation_page(proposal, action, token))


@router.post("/resolve/{token}", response_model=ResolutionResponse)
async def resolve_by_link(token: str, action: str, service: EvolutionService = Depends(get_service)):
    """Confirm button of the e-mail link page"""
    try:
        outcome = await service.resolve_by_token(token, action)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return ResolutionResponse(**outcome.to_dict())


@router.post("/inbound/{channel}", response_model=Union[ResolutionResponse, CommandResponse])
async def handle_inbound(channel: str, raw_event: dict, service: EvolutionService = Depends(get_service)):
    """Channel webhooks (Telegram updates, generic webhook replies, owner commands)"""
    try:
        outcome = await service.handle_inbound(channel, raw_event)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    if isinstance(outcome, CommandOutcome):
        return CommandResponse(**outcome.to_dict())
    return ResolutionResponse(**outcome.to_dict())


# =============================================================================
# Reconciliation
# =============================================================================

@router.get("/reconciliation", response_model=List[ProposalResponse])
async def list_unapplied(grace_minutes: Optional[int] = None, service: EvolutionService = Depends(get_service)):
    """approved AND NOT applied"""
    return await service.list_unapplied(grace_minutes)


@router.post("/proposals/{proposal_id}/retry_apply", response_model=ResolutionResponse)
async def retry_apply(proposal_id: str, service: EvolutionService = Depends(get_service)):
    try:
        outcome = await service.retry_apply(proposal_id)
    except BaseEvolutionException as e:
        raise map_exception_to_http(e)
    return ResolutionResponse(**outcome.to_dict())


# =============================================================================
# Calibration / channels
# =============================================================================

@router.get("/agents/{agent_id}/budget", response_model=BudgetResponse)
async def get_budget(agent_id: str, service: EvolutionService = Depends(get_service)):
    budget = await service.get_budget(agent_id)
    return BudgetResponse(**budget.to_dict())


@router.put("/organizations/{organization_id}/channels", response_model=ChannelResponse)
async def register_channel(
    organization_id: str,
    payload: ChannelRegisterRequest,
    service: EvolutionService = Depends(get_service)
):
    return await service.register_channel(
        organization_id,
        payload.channel,
        payload.address,
        enabled=payload.enabled,
    )
