"""
CALIBRATION TRACKER - human feedback → proposal budget
======================================================

Every terminal resolution (approved / edited / rejected / expired) lands in
the append-only ProposalOutcome table. The budget the Proposal Gate reads is
a pure function of that history:

    compute_budget(outcomes, policy, now) → Budget

CalibrationRecord is only a cache of the same computation for dashboards;
it is rebuilt on every record_outcome and never read by the gate.

Author: Soul Evolution Team
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy.exc import IntegrityError

import config
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger
from models import ProposalOutcome, CalibrationRecord, OutcomeKind, utc_now

logger = get_logger(__name__)


POSITIVE_OUTCOMES = {OutcomeKind.APPROVED.value, OutcomeKind.EDITED.value}


@dataclass
class Budget:
    """Current proposal allowance for one agent"""
    max_per_day: int
    cooldown_until: datetime | None
    approval_rate: float | None
    rubber_stamp_suspected: bool
    avg_resolution_seconds: float | None = None
    sample_size: int = 0

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def to_dict(self) -> dict:
        return {
            "max_per_day": self.max_per_day,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "approval_rate": self.approval_rate,
            "rubber_stamp_suspected": self.rubber_stamp_suspected,
            "avg_resolution_seconds": self.avg_resolution_seconds,
            "sample_size": self.sample_size,
        }


def _weighted_rate(samples: Iterable[tuple[float, float]]) -> float | None:
    total_weight = 0.0
    positive = 0.0
    for score, weight in samples:
        total_weight += weight
        positive += score * weight
    if total_weight == 0:
        return None
    return positive / total_weight


def compute_budget(outcomes: list, policy: dict, now: datetime) -> Budget:
    """
    Replay outcomes (oldest first) inside the trailing window.

    Rules:
        - start at base_max_per_day
        - negative outcome while the weighted approval rate over the last
          `approval_rate_window` resolutions is below the threshold → cap - 1
          (floor max_per_day_floor)
        - `rejection_streak_for_cooldown` rejections in a row →
          cooldown_until = latest rejection of the run + cooldown_hours
          (every further rejection in the run extends it)
        - `approval_streak_for_raise` approvals in a row → cap + 1
          (ceiling max_per_day_ceiling); edited counts as approval
        - expired is a mild negative (expired_weight)

    Args:
        outcomes: objects with .outcome, .recorded_at, .latency_seconds
    """
    window_start = now - timedelta(days=policy["window_days"])
    history = sorted(
        (o for o in outcomes if window_start <= o.recorded_at <= now),
        key=lambda o: o.recorded_at,
    )

    cap = policy["base_max_per_day"]
    cooldown_until = None
    trailing = deque(maxlen=policy["approval_rate_window"])
    rejection_streak = 0
    approval_streak = 0
    latency_ema = None
    approval_latencies = []

    for item in history:
        kind = item.outcome

        if kind in POSITIVE_OUTCOMES:
            trailing.append((1.0, 1.0))
            approval_streak += 1
            rejection_streak = 0
        elif kind == OutcomeKind.REJECTED.value:
            trailing.append((0.0, 1.0))
            rejection_streak += 1
            approval_streak = 0
        else:
            trailing.append((0.0, policy["expired_weight"]))
            approval_streak = 0

        if rejection_streak >= policy["rejection_streak_for_cooldown"]:
            cooldown_until = item.recorded_at + timedelta(hours=policy["cooldown_hours"])

        if approval_streak >= policy["approval_streak_for_raise"]:
            cap = min(policy["max_per_day_ceiling"], cap + 1)
            approval_streak = 0

        rate = _weighted_rate(trailing)
        if (
            kind not in POSITIVE_OUTCOMES
            and len(trailing) >= policy["approval_rate_min_samples"]
            and rate is not None
            and rate < policy["approval_rate_threshold"]
        ):
            cap = max(policy["max_per_day_floor"], cap - 1)

        if item.latency_seconds is not None and kind != OutcomeKind.EXPIRED.value:
            alpha = policy["latency_ema_alpha"]
            if latency_ema is None:
                latency_ema = float(item.latency_seconds)
            else:
                latency_ema = alpha * item.latency_seconds + (1 - alpha) * latency_ema

        if kind == OutcomeKind.APPROVED.value:
            approval_latencies.append(item.latency_seconds)

    # rubber-stamp: every one of the last N approvals was near-instant
    needed = policy["rubber_stamp_min_approvals"]
    recent = approval_latencies[-needed:]
    rubber_stamp = (
        len(recent) >= needed
        and all(
            latency is not None and latency < policy["rubber_stamp_max_seconds"]
            for latency in recent
        )
    )

    if cooldown_until is not None and cooldown_until <= now:
        cooldown_until = None

    return Budget(
        max_per_day=cap,
        cooldown_until=cooldown_until,
        approval_rate=_weighted_rate(trailing),
        rubber_stamp_suspected=rubber_stamp,
        avg_resolution_seconds=latency_ema,
        sample_size=len(history),
    )


class CalibrationTracker:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] | None = None,
        policy: dict | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._policy = policy or config.CALIBRATION_POLICY

    async def record_outcome(
        self,
        agent_id: str,
        proposal_id: str,
        outcome: str,
        latency_seconds: float | None,
        via: str | None,
        uow: UnitOfWork | None = None
    ) -> bool:
        """
        Append one outcome (idempotent on proposal_id) and refresh the cache.

        Returns:
            False если outcome для этого proposal уже записан
        """
        outcome = OutcomeKind(outcome).value
        if uow is not None:
            return await self._record_in(uow, agent_id, proposal_id, outcome, latency_seconds, via)

        try:
            async with self._uow_factory() as own_uow:
                return await self._record_in(own_uow, agent_id, proposal_id, outcome, latency_seconds, via)
        except IntegrityError:
            # concurrent duplicate for the same proposal
            return False

    async def get_budget(self, agent_id: str, now: datetime | None = None) -> Budget:
        now = now or self._clock()
        async with self._uow_factory() as uow:
            outcomes = await uow.outcomes.list_since(
                uow.session,
                agent_id,
                now - timedelta(days=self._policy["window_days"]),
            )
        return compute_budget(outcomes, self._policy, now)

    async def get_record(self, agent_id: str) -> CalibrationRecord | None:
        async with self._uow_factory() as uow:
            return await uow.outcomes.get_record(uow.session, agent_id)

    async def _record_in(
        self,
        uow: UnitOfWork,
        agent_id: str,
        proposal_id: str,
        outcome: str,
        latency_seconds: float | None,
        via: str | None
    ) -> bool:
        if await uow.outcomes.get_by_proposal(uow.session, proposal_id) is not None:
            logger.info("outcome_already_recorded", proposal_id=proposal_id)
            return False

        now = self._clock()
        await uow.outcomes.add(uow.session, ProposalOutcome(
            proposal_id=proposal_id,
            agent_id=agent_id,
            outcome=outcome,
            latency_seconds=latency_seconds,
            resolved_via=via,
            recorded_at=now,
        ))

        outcomes = await uow.outcomes.list_since(
            uow.session,
            agent_id,
            now - timedelta(days=self._policy["window_days"]),
        )
        budget = compute_budget(outcomes, self._policy, now)
        await self._refresh_record(uow, agent_id, outcomes, budget, now)

        logger.info(
            "outcome_recorded",
            agent_id=agent_id,
            proposal_id=proposal_id,
            outcome=outcome,
            latency_seconds=latency_seconds,
            via=via,
            max_per_day=budget.max_per_day,
            cooldown_until=budget.cooldown_until.isoformat() if budget.cooldown_until else None,
        )
        if budget.rubber_stamp_suspected:
            logger.warning("rubber_stamp_suspected", agent_id=agent_id)
        return True

    async def _refresh_record(self, uow: UnitOfWork, agent_id: str, outcomes: list, budget: Budget, now: datetime) -> None:
        counts = {kind.value: 0 for kind in OutcomeKind}
        for item in outcomes:
            counts[item.outcome] += 1

        record = await uow.outcomes.get_record(uow.session, agent_id)
        if record is None:
            record = CalibrationRecord(agent_id=agent_id)

        record.approved_count = counts[OutcomeKind.APPROVED.value]
        record.edited_count = counts[OutcomeKind.EDITED.value]
        record.rejected_count = counts[OutcomeKind.REJECTED.value]
        record.expired_count = counts[OutcomeKind.EXPIRED.value]
        record.avg_resolution_seconds = budget.avg_resolution_seconds
        record.max_per_day = budget.max_per_day
        record.cooldown_until = budget.cooldown_until
        record.rubber_stamp_suspected = budget.rubber_stamp_suspected
        record.updated_at = now

        await uow.outcomes.save_record(uow.session, record)
