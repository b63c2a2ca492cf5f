"""
PROPOSAL LIFECYCLE MANAGER
==========================

Единственный writer для SoulProposal.status и единственный caller
мутирующих операций ConfigurationStore.

    pending ──approve/edit──▶ approved ──apply──▶ applied
       │
       ├──reject──▶ rejected
       └──sweep───▶ expired

"First resolution wins": every transition out of `pending` is a single
conditional UPDATE ... WHERE status = 'pending'. Whoever loses the
compare-and-set gets the outcome that actually happened, not an error.

After a won approve the configuration write is retried on
ConcurrentModification with exponential backoff; approved → applied is
written in the same transaction as the new configuration version. If every
attempt fails the proposal stays `approved` and surfaces in
find_unapplied() for operator reconciliation.

Author: Soul Evolution Team
"""
import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import config
from calibration_tracker import CalibrationTracker
from configuration_store import ConfigurationStore
from domain.proposal_state import (
    ProposalStatus,
    Decision,
    DECISION_TARGET,
    validate_transition,
    decision_from_status,
    outcome_for,
)
from domain.soul_fields import build_mutator, validate_change
from exceptions import (
    ApplyFailed,
    ConcurrentModification,
    ConfigurationNotFound,
    InvalidResolutionToken,
    ProposalNotFound,
    ProtectedFieldViolation,
    UnsupportedChange,
)
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger, log_proposal_transition, log_error
from models import SoulProposal, utc_now

logger = get_logger(__name__)


@dataclass
class ResolutionOutcome:
    """What the human (or the channel adapter) gets back"""
    proposal_id: str
    decision: str | None
    status: str
    already_resolved: bool
    message: str
    resolved_via: str | None = None
    resolved_at: datetime | None = None
    applied_version: int | None = None

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "decision": self.decision,
            "status": self.status,
            "already_resolved": self.already_resolved,
            "message": self.message,
            "resolved_via": self.resolved_via,
            "resolved_at": self.resolved_at,
            "applied_version": self.applied_version,
        }


class _LostApplyRace(Exception):
    """approved → applied CAS lost: another apply landed first, roll back ours"""


def describe_resolution(proposal: SoulProposal) -> str:
    """'already approved via telegram at 14:02'"""
    status = proposal.status
    if status == ProposalStatus.PENDING.value:
        return "still pending"

    at = f" at {proposal.resolved_at:%H:%M}" if proposal.resolved_at else ""
    if status == ProposalStatus.EXPIRED.value:
        return f"already expired{at}"

    verb = "approved" if status in (ProposalStatus.APPROVED.value, ProposalStatus.APPLIED.value) else status
    via = f" via {proposal.resolved_via}" if proposal.resolved_via else ""
    message = f"already {verb}{via}{at}"
    if status == ProposalStatus.APPROVED.value:
        message += " (not applied yet)"
    return message


class ProposalLifecycleManager:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        store: ConfigurationStore | None = None,
        calibration: CalibrationTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        policy: dict | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._store = store or ConfigurationStore(self._uow_factory, clock=self._clock)
        self._calibration = calibration or CalibrationTracker(self._uow_factory, clock=self._clock)
        self._policy = policy or config.PROPOSAL_POLICY

    # =========================================================================
    # Resolution
    # =========================================================================

    async def approve(
        self,
        proposal_id: str,
        via: str,
        resolution_token: str,
        edited_value: str | None = None
    ) -> ResolutionOutcome:
        """
        Approve (optionally with an edited value) and apply.

        Raises:
            ProposalNotFound, InvalidResolutionToken, ProtectedFieldViolation,
            UnsupportedChange (edited value does not fit the field),
            ApplyFailed (approved but not applied)
        """
        return await self._resolve(proposal_id, via, resolution_token, Decision.APPROVE, edited_value)

    async def edit_and_approve(
        self,
        proposal_id: str,
        via: str,
        resolution_token: str,
        new_value: str
    ) -> ResolutionOutcome:
        """Same as approve, but always uses `new_value` and flags the human edit"""
        return await self._resolve(proposal_id, via, resolution_token, Decision.EDIT, new_value)

    async def reject(self, proposal_id: str, via: str, resolution_token: str) -> ResolutionOutcome:
        return await self._resolve(proposal_id, via, resolution_token, Decision.REJECT, None)

    async def _resolve(
        self,
        proposal_id: str,
        via: str,
        resolution_token: str,
        decision: Decision,
        value: str | None
    ) -> ResolutionOutcome:
        now = self._clock()
        proposal = await self.get_proposal(proposal_id)

        expected_token = (proposal.resolution_tokens or {}).get(via)
        if not expected_token or not secrets.compare_digest(str(expected_token), str(resolution_token or "")):
            logger.warning("invalid_resolution_token", proposal_id=proposal_id, via=via)
            raise InvalidResolutionToken(proposal_id, via)

        if proposal.status != ProposalStatus.PENDING.value:
            return await self._settled_outcome(proposal)

        if now >= proposal.expires_at:
            await self._expire_one(proposal, now)
            return self._existing_outcome(await self.get_proposal(proposal_id))

        human_edited = False
        edited_value = None
        if decision in (Decision.APPROVE, Decision.EDIT):
            await self._ensure_not_protected(proposal, via, now)
            if value is not None:
                validate_change(proposal.target_field, proposal.change_kind, value)
                edited_value = value
                human_edited = decision == Decision.EDIT or value != proposal.proposed_value
            if human_edited:
                decision = Decision.EDIT

        target = DECISION_TARGET[decision]
        validate_transition(proposal.status, target)
        latency = max((now - proposal.created_at).total_seconds(), 0.0)

        async with self._uow_factory() as uow:
            won = await uow.proposals.cas_status(
                uow.session,
                proposal_id,
                expected=ProposalStatus.PENDING.value,
                new=target.value,
                resolved_at=now,
                resolved_via=via,
                resolution_token_used=resolution_token,
                edited_value=edited_value,
                human_edited=human_edited,
            )
            if won:
                await self._calibration.record_outcome(
                    proposal.agent_id,
                    proposal_id,
                    outcome_for(decision),
                    latency,
                    via,
                    uow=uow,
                )
                await uow.audit.log(
                    uow.session,
                    "proposal_resolved",
                    agent_id=proposal.agent_id,
                    organization_id=proposal.organization_id,
                    proposal_id=proposal_id,
                    actor=f"human:{via}",
                    decision=decision.value,
                    payload={
                        "latency_seconds": latency,
                        "human_edited": human_edited,
                        "edited_value": edited_value,
                    },
                    occurred_at=now,
                )

        if not won:
            logger.info("resolution_race_lost", proposal_id=proposal_id, via=via, decision=decision.value)
            return await self._settled_outcome(await self.get_proposal(proposal_id))

        log_proposal_transition(
            proposal_id=proposal_id,
            from_state=ProposalStatus.PENDING.value,
            to_state=target.value,
            actor=f"human:{via}",
            reason=decision.value,
        )

        if target != ProposalStatus.APPROVED:
            return ResolutionOutcome(
                proposal_id=proposal_id,
                decision=decision.value,
                status=target.value,
                already_resolved=False,
                message=f"{target.value} via {via}",
                resolved_via=via,
                resolved_at=now,
            )

        applied_version = await self._apply(proposal_id, actor=f"human:{via}")
        return ResolutionOutcome(
            proposal_id=proposal_id,
            decision=decision.value,
            status=ProposalStatus.APPLIED.value,
            already_resolved=False,
            message=f"approved via {via}, configuration is now v{applied_version}",
            resolved_via=via,
            resolved_at=now,
            applied_version=applied_version,
        )

    # =========================================================================
    # Apply
    # =========================================================================

    async def _apply(self, proposal_id: str, actor: str) -> int:
        proposal = await self.get_proposal(proposal_id)
        max_attempts = self._policy["apply_max_attempts"]
        backoff = self._policy["apply_backoff_seconds"]

        try:
            mutator = build_mutator(
                proposal.target_field,
                proposal.change_kind,
                proposal.resolved_value,
                proposal.current_value,
            )
        except UnsupportedChange as e:
            await self._record_apply_failure(proposal, 1, e.message, actor)
            raise ApplyFailed(proposal_id, 1, e.message)

        attempts_made = 0
        last_error = None
        for attempt in range(1, max_attempts + 1):
            attempts_made = attempt
            try:
                applied_version = await self._apply_once(proposal, mutator, attempt, actor)
            except _LostApplyRace:
                current = await self.get_proposal(proposal_id)
                return current.applied_version
            except ConcurrentModification as e:
                last_error = e.message
                logger.warning(
                    "apply_conflict",
                    proposal_id=proposal_id,
                    agent_id=proposal.agent_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(backoff * (2 ** (attempt - 1)))
                continue
            except (UnsupportedChange, ConfigurationNotFound) as e:
                # permanent, retrying will not help
                last_error = e.message
                break

            log_proposal_transition(
                proposal_id=proposal_id,
                from_state=ProposalStatus.APPROVED.value,
                to_state=ProposalStatus.APPLIED.value,
                actor=actor,
                reason=f"configuration v{applied_version}",
            )
            return applied_version

        await self._record_apply_failure(proposal, attempts_made, last_error, actor)
        raise ApplyFailed(proposal_id, attempts_made, last_error)

    async def _apply_once(self, proposal: SoulProposal, mutator, attempt: int, actor: str) -> int:
        now = self._clock()
        async with self._uow_factory() as uow:
            new_version = await self._store.apply_change(
                proposal.agent_id,
                mutator,
                proposal.id,
                uow=uow,
            )
            won = await uow.proposals.cas_status(
                uow.session,
                proposal.id,
                expected=ProposalStatus.APPROVED.value,
                new=ProposalStatus.APPLIED.value,
                applied_at=now,
                applied_version=new_version,
                apply_attempts=(proposal.apply_attempts or 0) + attempt,
                last_apply_error=None,
            )
            if not won:
                raise _LostApplyRace()

            await uow.audit.log(
                uow.session,
                "proposal_applied",
                agent_id=proposal.agent_id,
                organization_id=proposal.organization_id,
                proposal_id=proposal.id,
                actor=actor,
                payload={"version": new_version, "attempt": attempt},
                occurred_at=now,
            )
        return new_version

    async def _record_apply_failure(self, proposal: SoulProposal, attempts: int, error: str | None, actor: str) -> None:
        async with self._uow_factory() as uow:
            await uow.proposals.update_fields(
                uow.session,
                proposal.id,
                apply_attempts=(proposal.apply_attempts or 0) + attempts,
                last_apply_error=error,
            )
            await uow.audit.log(
                uow.session,
                "apply_failed",
                agent_id=proposal.agent_id,
                organization_id=proposal.organization_id,
                proposal_id=proposal.id,
                actor=actor,
                payload={"attempts": attempts, "error": error},
                occurred_at=self._clock(),
            )

        log_error(
            ApplyFailed(proposal.id, attempts, error or ""),
            context={"proposal_id": proposal.id, "agent_id": proposal.agent_id},
        )

    async def _ensure_not_protected(self, proposal: SoulProposal, via: str, now: datetime) -> None:
        """The protected set may have changed since admission"""
        configuration = await self._store.get_active(proposal.agent_id)
        if proposal.target_field not in (configuration.protected_fields or []):
            return

        async with self._uow_factory() as uow:
            await uow.audit.log(
                uow.session,
                "protected_field_violation",
                agent_id=proposal.agent_id,
                organization_id=proposal.organization_id,
                proposal_id=proposal.id,
                actor=f"human:{via}",
                payload={"target_field": proposal.target_field, "stage": "resolution"},
                occurred_at=now,
            )
        logger.warning(
            "protected_field_violation",
            proposal_id=proposal.id,
            agent_id=proposal.agent_id,
            target_field=proposal.target_field,
        )
        raise ProtectedFieldViolation(proposal.agent_id, proposal.target_field)

    # =========================================================================
    # Expiry
    # =========================================================================

    async def expire_sweep(self, now: datetime | None = None) -> list[str]:
        """
        pending → expired for every overdue proposal.

        Returns:
            ids this sweep actually expired (lost CAS ones are skipped)
        """
        now = now or self._clock()
        async with self._uow_factory() as uow:
            overdue = await uow.proposals.list_overdue(uow.session, now)

        expired = []
        for proposal in overdue:
            if await self._expire_one(proposal, now):
                expired.append(proposal.id)

        if expired:
            logger.info("expiry_sweep_completed", expired=len(expired), candidates=len(overdue))
        return expired

    async def _expire_one(self, proposal: SoulProposal, now: datetime) -> bool:
        async with self._uow_factory() as uow:
            won = await uow.proposals.cas_status(
                uow.session,
                proposal.id,
                expected=ProposalStatus.PENDING.value,
                new=ProposalStatus.EXPIRED.value,
                resolved_at=now,
                resolved_via="system",
            )
            if not won:
                return False

            await self._calibration.record_outcome(
                proposal.agent_id,
                proposal.id,
                outcome_for(Decision.EXPIRE),
                None,
                None,
                uow=uow,
            )
            await uow.audit.log(
                uow.session,
                "proposal_expired",
                agent_id=proposal.agent_id,
                organization_id=proposal.organization_id,
                proposal_id=proposal.id,
                actor="system",
                decision=Decision.EXPIRE.value,
                payload={"expires_at": proposal.expires_at.isoformat()},
                occurred_at=now,
            )

        log_proposal_transition(
            proposal_id=proposal.id,
            from_state=ProposalStatus.PENDING.value,
            to_state=ProposalStatus.EXPIRED.value,
            actor="system",
            reason="ttl elapsed",
        )
        return True

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def find_unapplied(self, grace: timedelta | None = None, now: datetime | None = None) -> list[SoulProposal]:
        """approved AND NOT applied, resolved longer ago than `grace`"""
        now = now or self._clock()
        if grace is None:
            grace = timedelta(minutes=self._policy["reconciliation_grace_minutes"])
        async with self._uow_factory() as uow:
            return await uow.proposals.list_unapplied(uow.session, now - grace)

    async def retry_apply(self, proposal_id: str, actor: str = "operator") -> ResolutionOutcome:
        """Operator action for a proposal stuck in `approved`"""
        proposal = await self.get_proposal(proposal_id)
        if proposal.status != ProposalStatus.APPROVED.value:
            return self._existing_outcome(proposal)

        applied_version = await self._apply(proposal_id, actor=actor)
        proposal = await self.get_proposal(proposal_id)
        return ResolutionOutcome(
            proposal_id=proposal_id,
            decision=Decision.EDIT.value if proposal.human_edited else Decision.APPROVE.value,
            status=proposal.status,
            already_resolved=False,
            message=f"applied by {actor}, configuration is now v{applied_version}",
            resolved_via=proposal.resolved_via,
            resolved_at=proposal.resolved_at,
            applied_version=applied_version,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_proposal(self, proposal_id: str) -> SoulProposal:
        async with self._uow_factory() as uow:
            proposal = await uow.proposals.get(uow.session, proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id=proposal_id)
        return proposal

    async def find_by_token(self, token: str) -> tuple[str, str]:
        """token → (proposal_id, channel)"""
        async with self._uow_factory() as uow:
            row = await uow.proposals.get_token(uow.session, token)
        if row is None:
            raise ProposalNotFound(token=token)
        return row.proposal_id, row.channel

    async def list_pending(self, agent_id: str) -> list[SoulProposal]:
        return await self.list_proposals(agent_id, status=ProposalStatus.PENDING.value)

    async def list_proposals(self, agent_id: str, status: str | None = None, limit: int = 50) -> list[SoulProposal]:
        statuses = [ProposalStatus(status).value] if status else None
        async with self._uow_factory() as uow:
            return await uow.proposals.list_for_agent(uow.session, agent_id, statuses=statuses, limit=limit)

    async def _settled_outcome(self, proposal: SoulProposal) -> ResolutionOutcome:
        """
        Outcome for a channel that did not win the resolution.

        While the winner is still inside its apply loop the proposal reads
        `approved` with no apply error; re-read (bounded) until the
        approved → applied write lands so every channel reports the same
        final state.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy["settle_timeout_seconds"]
        while (
            proposal.status == ProposalStatus.APPROVED.value
            and not proposal.last_apply_error
            and loop.time() < deadline
        ):
            await asyncio.sleep(self._policy["settle_poll_seconds"])
            proposal = await self.get_proposal(proposal.id)
        return self._existing_outcome(proposal)

    def _existing_outcome(self, proposal: SoulProposal) -> ResolutionOutcome:
        decision = decision_from_status(proposal.status)
        if decision == Decision.APPROVE and proposal.human_edited:
            decision = Decision.EDIT
        return ResolutionOutcome(
            proposal_id=proposal.id,
            decision=decision.value if decision else None,
            status=proposal.status,
            already_resolved=proposal.status != ProposalStatus.PENDING.value,
            message=describe_resolution(proposal),
            resolved_via=proposal.resolved_via,
            resolved_at=proposal.resolved_at,
            applied_version=proposal.applied_version,
        )
