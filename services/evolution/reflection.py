"""
REFLECTION - drift/reflection producer contract + scheduled runner
==================================================================

The LLM drafting step lives outside this service. It is consumed through
ReflectionProducer.draft_proposals(agent_id, window) → [ProposalDraft];
HttpReflectionProducer calls it over HTTP (REFLECTION_URL).

ReflectionRunner drives one reflection cycle: draft → drop low-confidence
→ gate → dispatch admitted proposals.
Each agent reflects on its own schedule (`auto_reflection_schedule`:
daily | weekly | off, overridable per agent).

Author: Soul Evolution Team
"""
from datetime import timedelta
from typing import Awaitable, Callable, Protocol

import httpx
from pydantic import ValidationError

import config
from domain.evolution_policy import effective_policy
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger, log_error
from proposal_gate import AdmissionResult, ProposalGate
from schemas import ProposalDraft

logger = get_logger(__name__)


class ReflectionProducer(Protocol):

    async def draft_proposals(self, agent_id: str, window: timedelta) -> list[ProposalDraft]:
        ...


class HttpReflectionProducer:
    """
    POST {REFLECTION_URL} {"agent_id": ..., "window_days": ...}
    → {"proposals": [{target_field, change_kind, proposed_value, ...}]}
    """

    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None):
        self._url = url if url is not None else config.REFLECTION_URL
        self._client = client

    async def draft_proposals(self, agent_id: str, window: timedelta) -> list[ProposalDraft]:
        if not self._url:
            logger.debug("reflection_producer_not_configured", agent_id=agent_id)
            return []

        payload = {"agent_id": agent_id, "window_days": window.days}
        if self._client is not None:
            response = await self._client.post(self._url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(self._url, json=payload)
        response.raise_for_status()

        drafts = []
        for raw in response.json().get("proposals", []):
            try:
                drafts.append(ProposalDraft(
                    **{**raw, "agent_id": agent_id, "trigger_type": "reflection"}
                ))
            except ValidationError as e:
                logger.warning("reflection_draft_invalid", agent_id=agent_id, error=str(e))
        return drafts


def _schedule_window(schedule: str) -> timedelta:
    if schedule == "daily":
        return timedelta(days=config.SCHEDULER_POLICY["daily_reflection_window_days"])
    return timedelta(days=config.SCHEDULER_POLICY["reflection_window_days"])


class ReflectionRunner:

    def __init__(
        self,
        gate: ProposalGate,
        producer: ReflectionProducer,
        dispatch: Callable[[object], Awaitable[None]],
        uow_factory: Callable[[], UnitOfWork] | None = None,
        policy: dict | None = None
    ):
        self._gate = gate
        self._producer = producer
        self._dispatch = dispatch
        self._uow_factory = uow_factory or create_uow_provider()
        self._policy = policy or config.PROPOSAL_POLICY

    async def run_for_agent(self, agent_id: str, window: timedelta | None = None) -> list[AdmissionResult]:
        window = window or timedelta(days=config.SCHEDULER_POLICY["reflection_window_days"])
        drafts = await self._producer.draft_proposals(agent_id, window)

        results = []
        for draft in drafts:
            # producer contract: low-confidence drafts never reach the gate
            if draft.confidence == "low":
                logger.info("reflection_draft_dropped", agent_id=agent_id, target_field=draft.target_field)
                continue

            result = await self._gate.admit(draft)
            results.append(result)
            if result.admitted:
                await self._dispatch(result.proposal)

        logger.info(
            "reflection_completed",
            agent_id=agent_id,
            drafts=len(drafts),
            admitted=sum(1 for result in results if result.admitted),
        )
        return results

    async def run_all(self, window: timedelta | None = None, schedule: str | None = None) -> dict[str, int]:
        """
        Reflection for every agent with evolution_enabled whose schedule is
        `schedule` (None: every schedule except `off`).

        Returns:
            {agent_id: admitted count}; agents whose run failed are absent
        """
        async with self._uow_factory() as uow:
            configurations = await uow.configurations.list_evolution_enabled(uow.session)

        summary = {}
        for configuration in configurations:
            agent_schedule = effective_policy(self._policy, configuration.policy_overrides)["auto_reflection_schedule"]
            if agent_schedule == "off" or (schedule is not None and agent_schedule != schedule):
                continue

            agent_window = window or _schedule_window(agent_schedule)
            try:
                results = await self.run_for_agent(configuration.agent_id, agent_window)
            except Exception as e:
                # one agent's failure must not stop the cycle
                log_error(e, context={"agent_id": configuration.agent_id, "job": "reflection"})
                continue
            summary[configuration.agent_id] = sum(1 for result in results if result.admitted)
        return summary
