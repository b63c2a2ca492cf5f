"""
PROPOSAL GATE - admission control for self-evolution drafts
===========================================================

admit(draft) → AdmissionResult

Checks, in order (first failure wins):
    1. cooldown                      → THROTTLED_BY_COOLDOWN
    2. daily cap                     → DAILY_CAP_EXCEEDED
    3. protected field               → PROTECTED_FIELD_VIOLATION
    4. similar to a rejected one     → SIMILAR_TO_REJECTED
    5. low confidence                → INSUFFICIENT_CONFIDENCE
    6. too many pending              → TOO_MANY_PENDING
    7. weekly cap                    → WEEKLY_CAP_EXCEEDED
    8. change kind vs field kind     → UNSUPPORTED_CHANGE
    9. too soon after the last one   → COOLDOWN_BETWEEN_PROPOSALS
   10. too few conversations/sessions → INSUFFICIENT_EVIDENCE

Checks 6, 7, 9 and 10 read the agent's effective policy: PROPOSAL_POLICY
with SoulConfiguration.policy_overrides applied.

A rejection is an expected outcome, not an error: it is returned, logged as
`proposal_admission_rejected` and written to the audit trail.

Author: Soul Evolution Team
"""
import difflib
import enum
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import config
from calibration_tracker import CalibrationTracker
from domain.evolution_policy import effective_policy
from domain.proposal_state import ProposalStatus
from domain.soul_fields import validate_change, risk_level
from exceptions import ConfigurationNotFound, UnsupportedChange
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger
from models import SoulProposal, Channel, utc_now
from schemas import ProposalDraft

logger = get_logger(__name__)


class RejectionReason(str, enum.Enum):
    THROTTLED_BY_COOLDOWN = "ThrottledByCooldown"
    DAILY_CAP_EXCEEDED = "DailyCapExceeded"
    PROTECTED_FIELD_VIOLATION = "ProtectedFieldViolation"
    SIMILAR_TO_REJECTED = "SimilarToRejected"
    INSUFFICIENT_CONFIDENCE = "InsufficientConfidence"
    TOO_MANY_PENDING = "TooManyPending"
    WEEKLY_CAP_EXCEEDED = "WeeklyCapExceeded"
    UNSUPPORTED_CHANGE = "UnsupportedChange"
    COOLDOWN_BETWEEN_PROPOSALS = "CooldownBetweenProposals"
    INSUFFICIENT_EVIDENCE = "InsufficientEvidence"


@dataclass
class AdmissionResult:
    """Admitted proposal or a typed rejection (AdmissionRejected)"""
    admitted: bool
    proposal: SoulProposal | None = None
    reason: RejectionReason | None = None
    detail: str | None = None

    @classmethod
    def accept(cls, proposal: SoulProposal) -> "AdmissionResult":
        return cls(admitted=True, proposal=proposal)

    @classmethod
    def reject(cls, reason: RejectionReason, detail: str) -> "AdmissionResult":
        return cls(admitted=False, reason=reason, detail=detail)


# counted against the daily cap; rejected / expired drafts do not use budget
BUDGETED_STATUSES = [
    ProposalStatus.PENDING.value,
    ProposalStatus.APPROVED.value,
    ProposalStatus.APPLIED.value,
]

ALL_STATUSES = [status.value for status in ProposalStatus]


def text_similarity(a: str, b: str) -> float:
    """Default similarity: difflib ratio on normalized text, 0.0 … 1.0"""
    a = " ".join((a or "").lower().split())
    b = " ".join((b or "").lower().split())
    if not a and not b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b).ratio()


def new_resolution_token() -> str:
    # short enough for Telegram callback_data (64 bytes)
    return secrets.token_urlsafe(16)


class ProposalGate:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        calibration: CalibrationTracker | None = None,
        similarity: Callable[[str, str], float] | None = None,
        clock: Callable[[], datetime] | None = None,
        policy: dict | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._calibration = calibration or CalibrationTracker(self._uow_factory, clock=self._clock)
        self._similarity = similarity or text_similarity
        self._policy = policy or config.PROPOSAL_POLICY

    async def admit(self, draft: ProposalDraft, now: datetime | None = None) -> AdmissionResult:
        """
        Run every gate check and persist a `pending` proposal on success.

        Raises:
            ConfigurationNotFound: agent was never bootstrapped
        """
        now = now or self._clock()

        async with self._uow_factory() as uow:
            configuration = await uow.configurations.get(uow.session, draft.agent_id)
            if configuration is None:
                raise ConfigurationNotFound(draft.agent_id)

            rejection = await self._check(uow, draft, configuration, now)
            if rejection is not None:
                await self._record_rejection(uow, draft, configuration.organization_id, rejection, now)
                return rejection

            proposal = await self._persist(uow, draft, configuration.organization_id, now)

        logger.info(
            "proposal_admitted",
            proposal_id=proposal.id,
            agent_id=proposal.agent_id,
            target_field=proposal.target_field,
            change_kind=proposal.change_kind,
            risk_level=proposal.risk_level,
            channels=sorted(proposal.resolution_tokens),
        )
        return AdmissionResult.accept(proposal)

    async def _check(self, uow: UnitOfWork, draft: ProposalDraft, configuration, now: datetime) -> AdmissionResult | None:
        agent_id = draft.agent_id
        budget = await self._calibration.get_budget(agent_id, now)
        policy = effective_policy(self._policy, configuration.policy_overrides)

        # 1. cooldown
        if budget.in_cooldown(now):
            return AdmissionResult.reject(
                RejectionReason.THROTTLED_BY_COOLDOWN,
                f"Cooldown active until {budget.cooldown_until.isoformat()}"
            )

        # 2. daily cap
        created_today = await uow.proposals.count_created_since(
            uow.session, agent_id, now - timedelta(hours=24), BUDGETED_STATUSES
        )
        if created_today >= budget.max_per_day:
            return AdmissionResult.reject(
                RejectionReason.DAILY_CAP_EXCEEDED,
                f"{created_today} proposals in the last 24h, limit {budget.max_per_day}"
            )

        # 3. protected field
        if draft.target_field in (configuration.protected_fields or []):
            return AdmissionResult.reject(
                RejectionReason.PROTECTED_FIELD_VIOLATION,
                f"Field '{draft.target_field}' is protected"
            )

        # 4. similar to a recently rejected proposal
        recent = await uow.proposals.recent_resolved(
            uow.session,
            agent_id,
            draft.target_field,
            since=now - timedelta(days=policy["similarity_lookback_days"]),
            limit=policy["similarity_recent_limit"],
        )
        for previous in recent:
            if previous.status != ProposalStatus.REJECTED.value:
                continue
            score = self._similarity(draft.proposed_value, previous.proposed_value)
            if score >= policy["similarity_threshold"]:
                return AdmissionResult.reject(
                    RejectionReason.SIMILAR_TO_REJECTED,
                    f"Similar ({score:.2f}) to proposal {previous.id} rejected at "
                    f"{previous.resolved_at.isoformat()}"
                )

        # 5. confidence
        if draft.confidence == "low":
            return AdmissionResult.reject(
                RejectionReason.INSUFFICIENT_CONFIDENCE,
                "Low-confidence drafts are never shown to humans"
            )

        # 6. pending cap
        pending = await uow.proposals.count_created_since(
            uow.session, agent_id, None, [ProposalStatus.PENDING.value]
        )
        if pending >= policy["max_pending_proposals"]:
            return AdmissionResult.reject(
                RejectionReason.TOO_MANY_PENDING,
                f"{pending} proposals already waiting for review"
            )

        # 7. weekly cap
        created_week = await uow.proposals.count_created_since(
            uow.session, agent_id, now - timedelta(days=7), ALL_STATUSES
        )
        if created_week >= policy["max_proposals_per_week"]:
            return AdmissionResult.reject(
                RejectionReason.WEEKLY_CAP_EXCEEDED,
                f"{created_week} proposals in the last 7 days, limit {policy['max_proposals_per_week']}"
            )

        # 8. field / change kind
        try:
            validate_change(draft.target_field, draft.change_kind, draft.proposed_value)
        except UnsupportedChange as e:
            return AdmissionResult.reject(RejectionReason.UNSUPPORTED_CHANGE, e.message)

        # 9. pacing between proposals
        last_created = await uow.proposals.last_created_at(uow.session, agent_id)
        spacing = timedelta(hours=policy["cooldown_between_proposals_hours"])
        if last_created is not None and now - last_created < spacing:
            return AdmissionResult.reject(
                RejectionReason.COOLDOWN_BETWEEN_PROPOSALS,
                f"Last proposal at {last_created.isoformat()}, next allowed at {(last_created + spacing).isoformat()}"
            )

        # 10. minimum evidence
        if draft.conversation_count < policy["require_min_conversations"]:
            return AdmissionResult.reject(
                RejectionReason.INSUFFICIENT_EVIDENCE,
                f"{draft.conversation_count} conversations, need {policy['require_min_conversations']}"
            )
        if draft.session_count < policy["require_min_sessions"]:
            return AdmissionResult.reject(
                RejectionReason.INSUFFICIENT_EVIDENCE,
                f"{draft.session_count} sessions, need {policy['require_min_sessions']}"
            )

        return None

    async def _persist(self, uow: UnitOfWork, draft: ProposalDraft, organization_id: str, now: datetime) -> SoulProposal:
        channels = await uow.channels.list_enabled(uow.session, organization_id)
        tokens = {channel.channel: new_resolution_token() for channel in channels}
        tokens[Channel.WEB.value] = new_resolution_token()

        proposal = SoulProposal(
            agent_id=draft.agent_id,
            organization_id=organization_id,
            target_field=draft.target_field,
            change_kind=draft.change_kind,
            current_value=draft.current_value,
            proposed_value=draft.proposed_value,
            reason=draft.reason,
            confidence=draft.confidence,
            trigger_type=draft.trigger_type,
            risk_level=risk_level(draft.target_field, draft.change_kind),
            telemetry_summary=draft.telemetry_summary,
            created_at=now,
            expires_at=now + timedelta(hours=self._policy["ttl_hours"]),
            resolution_tokens=tokens,
            human_edited=False,
            apply_attempts=0,
        )
        await uow.proposals.add(uow.session, proposal)
        await uow.proposals.add_tokens(uow.session, proposal.id, tokens)

        await uow.audit.log(
            uow.session,
            "proposal_created",
            agent_id=draft.agent_id,
            organization_id=organization_id,
            proposal_id=proposal.id,
            actor=f"agent:{draft.trigger_type}",
            payload={
                "target_field": draft.target_field,
                "change_kind": draft.change_kind,
                "confidence": draft.confidence,
                "conversation_count": draft.conversation_count,
                "session_count": draft.session_count,
                "channels": sorted(tokens),
            },
            occurred_at=now,
        )
        return proposal

    async def _record_rejection(
        self,
        uow: UnitOfWork,
        draft: ProposalDraft,
        organization_id: str,
        result: AdmissionResult,
        now: datetime
    ) -> None:
        if result.reason == RejectionReason.PROTECTED_FIELD_VIOLATION:
            logger.warning(
                "protected_field_violation",
                agent_id=draft.agent_id,
                target_field=draft.target_field,
                trigger_type=draft.trigger_type,
            )
            await uow.audit.log(
                uow.session,
                "protected_field_violation",
                agent_id=draft.agent_id,
                organization_id=organization_id,
                actor=f"agent:{draft.trigger_type}",
                payload={"target_field": draft.target_field, "stage": "gate"},
                occurred_at=now,
            )

        await uow.audit.log(
            uow.session,
            "proposal_rejected_at_gate",
            agent_id=draft.agent_id,
            organization_id=organization_id,
            actor="gate",
            decision=result.reason.value,
            payload={
                "target_field": draft.target_field,
                "change_kind": draft.change_kind,
                "detail": result.detail,
            },
            occurred_at=now,
        )

        # metric event
        logger.info(
            "proposal_admission_rejected",
            agent_id=draft.agent_id,
            reason=result.reason.value,
            detail=result.detail,
            target_field=draft.target_field,
        )
