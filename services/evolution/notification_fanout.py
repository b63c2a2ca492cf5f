"""
NOTIFICATION FAN-OUT - one pending proposal → every channel of the org
======================================================================

dispatch(proposal):
    - render + send through each enabled channel concurrently
    - one retry per channel
    - a failing channel never blocks the others; every outcome goes to
      soul_delivery_log

handle_inbound(channel, raw_event):
    adapter.parse_inbound → token lookup → lifecycle approve/reject/edit
    → adapter.acknowledge with the real outcome
    owner commands (history, rollback) from a registered chat go to the
    ConfigurationStore instead → adapter.acknowledge_command

Author: Soul Evolution Team
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from calibration_tracker import CalibrationTracker
from channel_adapters import ChannelAdapter, DeliveryResult, InboundCommand, build_default_adapters
from configuration_store import ConfigurationStore
from domain.proposal_state import ProposalStatus
from exceptions import ApplyFailed, InboundParseError, UnauthorizedChannel
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger, log_error
from models import DeliveryLog, SoulProposal, utc_now
from proposal_lifecycle import ProposalLifecycleManager, ResolutionOutcome

logger = get_logger(__name__)

MAX_SEND_ATTEMPTS = 2

# versions listed (and offered for rollback) by the history command
HISTORY_LIMIT = 5

ROLLBACK_REQUESTED_BY = "owner_telegram"

RUBBER_STAMP_NOTE = (
    "Recent approvals were very fast. Please read this one carefully before approving."
)


def render_history(snapshots: list) -> str:
    """Version list for chat surfaces (newest first)"""
    if not snapshots:
        return "No configuration history yet."

    lines = ["Soul history:"]
    for snapshot in snapshots:
        line = f"v{snapshot.version} · {snapshot.change_type} · {snapshot.created_at:%Y-%m-%d %H:%M}"
        if snapshot.rollback_target_version is not None:
            line += f" · restored v{snapshot.rollback_target_version}"
        if snapshot.changed_by:
            line += f" · by {snapshot.changed_by}"
        lines.append(line)
    return "\n".join(lines)


@dataclass
class CommandOutcome:
    """Result of an owner chat command"""
    command: str
    agent_id: str
    message: str
    restored_version: int | None = None
    new_version: int | None = None
    rollback_versions: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "agent_id": self.agent_id,
            "message": self.message,
            "restored_version": self.restored_version,
            "new_version": self.new_version,
            "rollback_versions": list(self.rollback_versions),
        }


class NotificationFanout:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        lifecycle: ProposalLifecycleManager | None = None,
        store: ConfigurationStore | None = None,
        calibration: CalibrationTracker | None = None,
        adapters: dict[str, ChannelAdapter] | None = None,
        clock: Callable[[], datetime] | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._lifecycle = lifecycle or ProposalLifecycleManager(self._uow_factory, clock=self._clock)
        self._store = store or ConfigurationStore(self._uow_factory, clock=self._clock)
        self._calibration = calibration or CalibrationTracker(self._uow_factory, clock=self._clock)
        self._adapters = adapters if adapters is not None else build_default_adapters()

    # =========================================================================
    # Outbound
    # =========================================================================

    async def dispatch(self, proposal: SoulProposal | str) -> dict[str, DeliveryResult]:
        """
        Deliver a pending proposal on every enabled channel.

        Returns:
            {channel: DeliveryResult}
        """
        if isinstance(proposal, str):
            proposal = await self._lifecycle.get_proposal(proposal)

        if proposal.status != ProposalStatus.PENDING.value:
            logger.info("dispatch_skipped_not_pending", proposal_id=proposal.id, status=proposal.status)
            return {}

        async with self._uow_factory() as uow:
            channels = await uow.channels.list_enabled(uow.session, proposal.organization_id)

        budget = await self._calibration.get_budget(proposal.agent_id)
        notes = [RUBBER_STAMP_NOTE] if budget.rubber_stamp_suspected else []

        results = await asyncio.gather(
            *[self._deliver(proposal, channel.channel, channel.address, notes) for channel in channels]
        )

        now = self._clock()
        async with self._uow_factory() as uow:
            for channel_name, result, attempts in results:
                await uow.channels.log_delivery(uow.session, DeliveryLog(
                    proposal_id=proposal.id,
                    channel=channel_name,
                    delivered=result.ok,
                    attempts=attempts,
                    external_id=result.external_id,
                    error=None if result.ok else result.detail,
                    created_at=now,
                ))

        delivered = {name: result for name, result, _ in results}
        logger.info(
            "proposal_dispatched",
            proposal_id=proposal.id,
            delivered=sorted(name for name, result in delivered.items() if result.ok),
            failed=sorted(name for name, result in delivered.items() if not result.ok),
        )
        return delivered

    async def _deliver(
        self,
        proposal: SoulProposal,
        channel_name: str,
        address: str,
        notes: list[str]
    ) -> tuple[str, DeliveryResult, int]:
        adapter = self._adapters.get(channel_name)
        token = (proposal.resolution_tokens or {}).get(channel_name)
        if adapter is None or token is None:
            detail = "no adapter configured" if adapter is None else "no resolution token for channel"
            logger.warning("channel_delivery_skipped", proposal_id=proposal.id, channel=channel_name, detail=detail)
            return channel_name, DeliveryResult(ok=False, detail=detail), 0

        try:
            rendered = adapter.render_summary(proposal, notes)
        except Exception as e:
            log_error(e, context={"proposal_id": proposal.id, "channel": channel_name, "stage": "render"}, level="WARNING")
            return channel_name, DeliveryResult(ok=False, detail=f"render failed: {type(e).__name__}: {e}"), 0

        result = DeliveryResult(ok=False, detail="not attempted")
        attempt = 0
        for attempt in range(1, MAX_SEND_ATTEMPTS + 1):
            try:
                result = await adapter.send(address, rendered, token)
            except Exception as e:
                log_error(e, context={"proposal_id": proposal.id, "channel": channel_name, "attempt": attempt}, level="WARNING")
                result = DeliveryResult(ok=False, detail=f"{type(e).__name__}: {e}")

            if result.ok:
                break
            logger.warning(
                "channel_delivery_failed",
                proposal_id=proposal.id,
                channel=channel_name,
                attempt=attempt,
                detail=result.detail,
            )

        return channel_name, result, attempt

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_inbound(self, channel: str, raw_event: dict) -> ResolutionOutcome | CommandOutcome:
        """
        Raises:
            InboundParseError, ProposalNotFound, InvalidResolutionToken,
            ProtectedFieldViolation, UnsupportedChange, ApplyFailed,
            UnauthorizedChannel, ConfigurationNotFound, VersionNotFound
        """
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise InboundParseError(channel, "unknown channel")

        inbound = adapter.parse_inbound(raw_event)
        if isinstance(inbound, InboundCommand):
            return await self._handle_command(channel, adapter, raw_event, inbound)

        proposal_id = inbound.proposal_id
        if proposal_id is None:
            proposal_id, _ = await self._lifecycle.find_by_token(inbound.token)

        logger.info("inbound_resolution", channel=channel, proposal_id=proposal_id, action=inbound.action)

        try:
            if inbound.action == "approve":
                outcome = await self._lifecycle.approve(proposal_id, channel, inbound.token)
            elif inbound.action == "reject":
                outcome = await self._lifecycle.reject(proposal_id, channel, inbound.token)
            else:
                outcome = await self._lifecycle.edit_and_approve(
                    proposal_id, channel, inbound.token, inbound.edited_value
                )
        except ApplyFailed:
            await adapter.acknowledge(raw_event, ResolutionOutcome(
                proposal_id=proposal_id,
                decision=inbound.action,
                status=ProposalStatus.APPROVED.value,
                already_resolved=False,
                message="approved, but the change could not be applied yet; an operator will retry",
                resolved_via=channel,
            ))
            raise

        await adapter.acknowledge(raw_event, outcome)
        return outcome

    async def _handle_command(
        self,
        channel: str,
        adapter: ChannelAdapter,
        raw_event: dict,
        command: InboundCommand
    ) -> CommandOutcome:
        """history / rollback, only from the org's registered chat for that channel"""
        configuration = await self._store.get_active(command.agent_id)
        async with self._uow_factory() as uow:
            registered = await uow.channels.get(uow.session, configuration.organization_id, channel)

        if registered is None or not registered.enabled or registered.address != command.chat_id:
            logger.warning(
                "owner_command_unauthorized",
                channel=channel,
                agent_id=command.agent_id,
                command=command.command,
                chat_id=command.chat_id,
            )
            raise UnauthorizedChannel(channel, command.agent_id)

        if command.command == "history":
            snapshots = await self._store.get_history(command.agent_id, limit=HISTORY_LIMIT)
            outcome = CommandOutcome(
                command="history",
                agent_id=command.agent_id,
                message=render_history(snapshots),
                # the newest version is the live one
                rollback_versions=[snapshot.version for snapshot in snapshots[1:]],
            )
        elif command.command == "rollback":
            new_version = await self._store.rollback(command.agent_id, command.version, ROLLBACK_REQUESTED_BY)
            outcome = CommandOutcome(
                command="rollback",
                agent_id=command.agent_id,
                message=f"Soul rolled back to version {command.version}. New version: v{new_version}",
                restored_version=command.version,
                new_version=new_version,
            )
        else:
            raise InboundParseError(channel, f"unknown command '{command.command}'")

        logger.info("owner_command_handled", channel=channel, agent_id=command.agent_id, command=command.command)
        await adapter.acknowledge_command(raw_event, outcome)
        return outcome
