"""
EVOLUTION SERVICE - facade over the soul evolution components
=============================================================

ARCHITECTURE:
- Domain Layer: domain/ - чистые правила (states, fields, mutators)
- Application Layer: configuration_store, calibration_tracker, proposal_gate,
  proposal_lifecycle, notification_fanout, reflection
- Infrastructure: infrastructure/uow.py - транзакции и репозитории

Everything the API router, the scheduler and the Celery task need goes
through this one object.

Author: Soul Evolution Team
"""
import asyncio
from datetime import datetime, timedelta
from typing import Callable

import config
from calibration_tracker import Budget, CalibrationTracker
from channel_adapters import ChannelAdapter
from configuration_store import ConfigurationStore
from exceptions import InboundParseError
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger, log_error
from models import (
    AuditEvent,
    Channel,
    ConfigurationSnapshot,
    DeliveryLog,
    NotificationChannel,
    SoulConfiguration,
    SoulProposal,
    utc_now,
)
from notification_fanout import CommandOutcome, NotificationFanout
from proposal_gate import AdmissionResult, ProposalGate
from proposal_lifecycle import ProposalLifecycleManager, ResolutionOutcome
from reflection import HttpReflectionProducer, ReflectionProducer, ReflectionRunner
from schemas import ProposalDraft

logger = get_logger(__name__)


class EvolutionService:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] | None = None,
        adapters: dict[str, ChannelAdapter] | None = None,
        producer: ReflectionProducer | None = None,
        similarity: Callable[[str, str], float] | None = None,
        dispatch_mode: str | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._dispatch_mode = dispatch_mode or config.DISPATCH_MODE
        self._background: set[asyncio.Task] = set()

        self.store = ConfigurationStore(self._uow_factory, clock=self._clock)
        self.calibration = CalibrationTracker(self._uow_factory, clock=self._clock)
        self.gate = ProposalGate(
            self._uow_factory,
            calibration=self.calibration,
            similarity=similarity,
            clock=self._clock,
        )
        self.lifecycle = ProposalLifecycleManager(
            self._uow_factory,
            store=self.store,
            calibration=self.calibration,
            clock=self._clock,
        )
        self.fanout = NotificationFanout(
            self._uow_factory,
            lifecycle=self.lifecycle,
            store=self.store,
            calibration=self.calibration,
            adapters=adapters,
            clock=self._clock,
        )
        self.reflection = ReflectionRunner(
            self.gate,
            producer or HttpReflectionProducer(),
            dispatch=self.schedule_dispatch,
            uow_factory=self._uow_factory,
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    async def bootstrap_configuration(
        self,
        agent_id: str,
        organization_id: str,
        fields: dict,
        protected_fields: list[str] | None = None,
        evolution_enabled: bool = True,
        policy_overrides: dict | None = None
    ) -> SoulConfiguration:
        return await self.store.bootstrap(
            agent_id,
            organization_id,
            fields,
            protected_fields=protected_fields,
            evolution_enabled=evolution_enabled,
            policy_overrides=policy_overrides,
        )

    async def get_active_configuration(self, agent_id: str) -> SoulConfiguration:
        return await self.store.get_active(agent_id)

    async def get_history(self, agent_id: str, limit: int | None = None) -> list[ConfigurationSnapshot]:
        return await self.store.get_history(agent_id, limit=limit)

    async def rollback(self, agent_id: str, version: int, requested_by: str = "operator") -> int:
        return await self.store.rollback(agent_id, version, requested_by)

    async def update_settings(
        self,
        agent_id: str,
        evolution_enabled: bool | None = None,
        policy_overrides: dict | None = None
    ) -> SoulConfiguration:
        return await self.store.update_settings(
            agent_id,
            evolution_enabled=evolution_enabled,
            policy_overrides=policy_overrides,
        )

    # =========================================================================
    # Proposals
    # =========================================================================

    async def submit_draft(self, draft: ProposalDraft) -> AdmissionResult:
        """Live-interaction trigger: gate + dispatch"""
        result = await self.gate.admit(draft)
        if result.admitted:
            await self.schedule_dispatch(result.proposal)
        return result

    async def list_pending(self, agent_id: str) -> list[SoulProposal]:
        return await self.lifecycle.list_pending(agent_id)

    async def list_proposals(self, agent_id: str, status: str | None = None, limit: int = 50) -> list[SoulProposal]:
        return await self.lifecycle.list_proposals(agent_id, status=status, limit=limit)

    async def get_proposal(self, proposal_id: str) -> SoulProposal:
        return await self.lifecycle.get_proposal(proposal_id)

    async def get_proposal_trail(self, proposal_id: str) -> tuple[list[DeliveryLog], list[AuditEvent]]:
        """Operator view: per-channel deliveries and the audit trail of one proposal"""
        await self.lifecycle.get_proposal(proposal_id)
        async with self._uow_factory() as uow:
            deliveries = await uow.channels.list_deliveries(uow.session, proposal_id)
            audit = await uow.audit.list_for_proposal(uow.session, proposal_id)
        return deliveries, audit

    async def resolve(
        self,
        proposal_id: str,
        action: str,
        resolution_token: str,
        edited_value: str | None = None,
        via: str = Channel.WEB.value
    ) -> ResolutionOutcome:
        """Operator dashboard / API channel"""
        if action == "approve":
            return await self.lifecycle.approve(proposal_id, via, resolution_token, edited_value)
        if action == "reject":
            return await self.lifecycle.reject(proposal_id, via, resolution_token)
        if action == "edit":
            if not edited_value:
                raise InboundParseError(via, "edit requires edited_value")
            return await self.lifecycle.edit_and_approve(proposal_id, via, resolution_token, edited_value)
        raise InboundParseError(via, f"unknown action '{action}'")

    async def preview_by_token(self, token: str, action: str) -> tuple[SoulProposal, str]:
        """
        Link opened: what the click would do. Changes nothing, so link
        scanners and previews that fetch it cannot resolve the proposal.
        """
        proposal_id, channel = await self.lifecycle.find_by_token(token)
        if action not in ("approve", "reject"):
            raise InboundParseError(channel, f"unknown action '{action}'")
        return await self.lifecycle.get_proposal(proposal_id), channel

    async def resolve_by_token(self, token: str, action: str) -> ResolutionOutcome:
        """Link confirmed: the token alone identifies proposal and channel"""
        proposal_id, channel = await self.lifecycle.find_by_token(token)
        if action not in ("approve", "reject"):
            raise InboundParseError(channel, f"unknown action '{action}'")
        return await self.resolve(proposal_id, action, token, via=channel)

    async def handle_inbound(self, channel: str, raw_event: dict) -> ResolutionOutcome | CommandOutcome:
        return await self.fanout.handle_inbound(channel, raw_event)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def schedule_dispatch(self, proposal: SoulProposal) -> None:
        """
        Decouple delivery from admission: the pending row is already
        committed, delivery runs as a background task or a Celery job.
        """
        if self._dispatch_mode == "celery":
            from tasks import dispatch_proposal
            dispatch_proposal.delay(proposal.id)
            logger.info("dispatch_queued", proposal_id=proposal.id)
            return

        task = asyncio.create_task(self.fanout.dispatch(proposal))
        self._background.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_error(error, context={"job": "dispatch"})

    async def wait_for_dispatches(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Reconciliation / expiry / reflection
    # =========================================================================

    async def list_unapplied(self, grace_minutes: int | None = None) -> list[SoulProposal]:
        grace = timedelta(minutes=grace_minutes) if grace_minutes is not None else None
        return await self.lifecycle.find_unapplied(grace)

    async def retry_apply(self, proposal_id: str, actor: str = "operator") -> ResolutionOutcome:
        return await self.lifecycle.retry_apply(proposal_id, actor=actor)

    async def expire_sweep(self, now: datetime | None = None) -> list[str]:
        return await self.lifecycle.expire_sweep(now)

    async def run_reflection(self, window: timedelta | None = None, schedule: str | None = None) -> dict[str, int]:
        return await self.reflection.run_all(window, schedule=schedule)

    # =========================================================================
    # Calibration / channels
    # =========================================================================

    async def get_budget(self, agent_id: str) -> Budget:
        return await self.calibration.get_budget(agent_id)

    async def register_channel(
        self,
        organization_id: str,
        channel: str,
        address: str,
        enabled: bool = True
    ) -> NotificationChannel:
        """Create or update the org's address for one channel"""
        if channel not in (Channel.TELEGRAM.value, Channel.WEBHOOK.value, Channel.EMAIL.value):
            raise InboundParseError(channel, "unsupported notification channel")

        async with self._uow_factory() as uow:
            existing = await uow.channels.get(uow.session, organization_id, channel)
            if existing is None:
                existing = NotificationChannel(
                    organization_id=organization_id,
                    channel=channel,
                    address=address,
                    enabled=enabled,
                )
            else:
                existing.address = address
                existing.enabled = enabled
            await uow.channels.save(uow.session, existing)

        logger.info("notification_channel_registered", organization_id=organization_id, channel=channel)
        return existing


_service: EvolutionService | None = None


def get_service() -> EvolutionService:
    """Process-wide instance (FastAPI dependency, scheduler, Celery)"""
    global _service
    if _service is None:
        _service = EvolutionService()
    return _service
