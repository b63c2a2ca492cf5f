"""
Unit of Work Pattern + Repositories + Audit Logger - Infrastructure Layer
=========================================================================
"""
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from logging_config import get_logger
from models import (
    SoulConfiguration,
    ConfigurationSnapshot,
    SoulProposal,
    ResolutionToken,
    ProposalOutcome,
    CalibrationRecord,
    NotificationChannel,
    DeliveryLog,
    AuditEvent,
    utc_now,
)

logger = get_logger(__name__)


class UnitOfWork:
    """
    Тонкий Unit of Work для управления транзакциями.

    Usage:
        async with UnitOfWork(session_factory) as uow:
            proposal = await uow.proposals.get(uow.session, proposal_id)
            won = await uow.proposals.cas_status(uow.session, proposal_id, "pending", "approved")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

        self.configurations = ConfigurationRepository()
        self.snapshots = SnapshotRepository()
        self.proposals = ProposalRepository()
        self.outcomes = OutcomeRepository()
        self.channels = ChannelRepository()
        self.audit = AuditLogger()

    async def __aenter__(self) -> "UnitOfWork":
        """Создаём сессию и начинаем транзакцию"""
        self._session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Коммит или rollback + закрытие сессии"""
        try:
            if exc_type is None:
                if self._session:
                    await self._session.commit()
            else:
                if self._session:
                    await self._session.rollback()
        finally:
            if self._session:
                await self._session.close()
                self._session = None

    @property
    def session(self) -> AsyncSession:
        """Доступ к текущей сессии"""
        if self._session is None:
            raise RuntimeError(
                "Session not available. Use 'async with UnitOfWork() as uow:' pattern."
            )
        return self._session


class ConfigurationRepository:
    """Репозиторий для SoulConfiguration - только CRUD + optimistic update"""

    async def get(self, session, agent_id: str) -> SoulConfiguration | None:
        stmt = select(SoulConfiguration).where(SoulConfiguration.agent_id == agent_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, session, configuration: SoulConfiguration) -> None:
        session.add(configuration)
        await session.flush()

    async def update_if_version(self, session, agent_id: str, read_version: int, **values) -> bool:
        """
        UPDATE ... WHERE agent_id = :agent_id AND version = :read_version

        Returns:
            False если версия уже изменилась (0 rows)
        """
        stmt = (
            update(SoulConfiguration)
            .where(
                SoulConfiguration.agent_id == agent_id,
                SoulConfiguration.version == read_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def list_evolution_enabled(self, session) -> list[SoulConfiguration]:
        stmt = select(SoulConfiguration).where(SoulConfiguration.evolution_enabled.is_(True))
        result = await session.execute(stmt)
        return list(result.scalars().all())


class SnapshotRepository:
    """Append-only: add + read, никаких update/delete"""

    async def add(self, session, snapshot: ConfigurationSnapshot) -> None:
        session.add(snapshot)
        await session.flush()

    async def get(self, session, agent_id: str, version: int) -> ConfigurationSnapshot | None:
        stmt = select(ConfigurationSnapshot).where(
            ConfigurationSnapshot.agent_id == agent_id,
            ConfigurationSnapshot.version == version,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(self, session, agent_id: str, limit: int | None = None) -> list[ConfigurationSnapshot]:
        stmt = (
            select(ConfigurationSnapshot)
            .where(ConfigurationSnapshot.agent_id == agent_id)
            .order_by(ConfigurationSnapshot.version.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())


class ProposalRepository:
    """
    Репозиторий для SoulProposal.

    Status меняется ТОЛЬКО через cas_status (compare-and-set на уровне
    хранилища), прямое присваивание proposal.status заблокировано моделью.
    """

    async def get(self, session, proposal_id: str) -> SoulProposal | None:
        stmt = (
            select(SoulProposal)
            .where(SoulProposal.id == proposal_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, session, proposal: SoulProposal) -> None:
        session.add(proposal)
        await session.flush()

    async def cas_status(
        self,
        session,
        proposal_id: str,
        expected: str,
        new: str,
        **values
    ) -> bool:
        """
        UPDATE soul_proposals SET status = :new, ... WHERE id = :id AND status = :expected

        Returns:
            True если именно этот вызов выиграл переход
        """
        assignments = {SoulProposal._status: new}
        for name, value in values.items():
            assignments[getattr(SoulProposal, name)] = value

        stmt = (
            update(SoulProposal)
            .where(SoulProposal.id == proposal_id, SoulProposal._status == expected)
            .values(assignments)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def update_fields(self, session, proposal_id: str, **values) -> None:
        """Non-status bookkeeping (apply_attempts, last_apply_error)"""
        assignments = {getattr(SoulProposal, name): value for name, value in values.items()}
        stmt = (
            update(SoulProposal)
            .where(SoulProposal.id == proposal_id)
            .values(assignments)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    async def list_for_agent(
        self,
        session,
        agent_id: str,
        statuses: list[str] | None = None,
        limit: int | None = None
    ) -> list[SoulProposal]:
        stmt = select(SoulProposal).where(SoulProposal.agent_id == agent_id)
        if statuses:
            stmt = stmt.where(SoulProposal._status.in_(statuses))
        stmt = stmt.order_by(SoulProposal.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_created_since(
        self,
        session,
        agent_id: str,
        since: datetime | None,
        statuses: list[str]
    ) -> int:
        stmt = select(func.count()).select_from(SoulProposal).where(
            SoulProposal.agent_id == agent_id,
            SoulProposal._status.in_(statuses),
        )
        if since is not None:
            stmt = stmt.where(SoulProposal.created_at >= since)
        result = await session.execute(stmt)
        return result.scalar_one()

    async def last_created_at(self, session, agent_id: str) -> datetime | None:
        """Newest proposal of the agent, any status"""
        stmt = select(func.max(SoulProposal.created_at)).where(SoulProposal.agent_id == agent_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def recent_resolved(
        self,
        session,
        agent_id: str,
        target_field: str,
        since: datetime,
        limit: int
    ) -> list[SoulProposal]:
        """Most recent resolved proposals for agent+field (similarity check)"""
        stmt = (
            select(SoulProposal)
            .where(
                SoulProposal.agent_id == agent_id,
                SoulProposal.target_field == target_field,
                SoulProposal.resolved_at.is_not(None),
                SoulProposal.resolved_at >= since,
            )
            .order_by(SoulProposal.resolved_at.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_overdue(self, session, now: datetime) -> list[SoulProposal]:
        stmt = select(SoulProposal).where(
            SoulProposal._status == "pending",
            SoulProposal.expires_at <= now,
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_unapplied(self, session, resolved_before: datetime) -> list[SoulProposal]:
        """approved AND NOT applied, resolved before the cutoff"""
        stmt = (
            select(SoulProposal)
            .where(
                SoulProposal._status == "approved",
                SoulProposal.resolved_at <= resolved_before,
            )
            .order_by(SoulProposal.resolved_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def add_tokens(self, session, proposal_id: str, tokens: dict) -> None:
        for channel, token in tokens.items():
            session.add(ResolutionToken(token=token, proposal_id=proposal_id, channel=channel))
        await session.flush()

    async def get_token(self, session, token: str) -> ResolutionToken | None:
        stmt = select(ResolutionToken).where(ResolutionToken.token == token)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


class OutcomeRepository:
    """ProposalOutcome (append-only) + CalibrationRecord cache"""

    async def get_by_proposal(self, session, proposal_id: str) -> ProposalOutcome | None:
        stmt = select(ProposalOutcome).where(ProposalOutcome.proposal_id == proposal_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, session, outcome: ProposalOutcome) -> None:
        session.add(outcome)
        await session.flush()

    async def list_since(self, session, agent_id: str, since: datetime) -> list[ProposalOutcome]:
        stmt = (
            select(ProposalOutcome)
            .where(
                ProposalOutcome.agent_id == agent_id,
                ProposalOutcome.recorded_at >= since,
            )
            .order_by(ProposalOutcome.recorded_at, ProposalOutcome.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get_record(self, session, agent_id: str) -> CalibrationRecord | None:
        stmt = select(CalibrationRecord).where(CalibrationRecord.agent_id == agent_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_record(self, session, record: CalibrationRecord) -> None:
        session.add(record)
        await session.flush()


class ChannelRepository:
    """NotificationChannel + DeliveryLog"""

    async def list_enabled(self, session, organization_id: str) -> list[NotificationChannel]:
        stmt = (
            select(NotificationChannel)
            .where(
                NotificationChannel.organization_id == organization_id,
                NotificationChannel.enabled.is_(True),
            )
            .order_by(NotificationChannel.channel)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, session, organization_id: str, channel: str) -> NotificationChannel | None:
        stmt = select(NotificationChannel).where(
            NotificationChannel.organization_id == organization_id,
            NotificationChannel.channel == channel,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, session, channel: NotificationChannel) -> None:
        session.add(channel)
        await session.flush()

    async def log_delivery(self, session, entry: DeliveryLog) -> None:
        session.add(entry)
        await session.flush()

    async def list_deliveries(self, session, proposal_id: str) -> list[DeliveryLog]:
        stmt = (
            select(DeliveryLog)
            .where(DeliveryLog.proposal_id == proposal_id)
            .order_by(DeliveryLog.channel)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


class AuditLogger:
    """
    Audit trail: AuditEvent row в той же транзакции + structlog event.

    Запись идёт в текущую сессию UoW, поэтому событие коммитится (или
    откатывается) вместе с изменением, которое оно описывает.
    """

    async def log(
        self,
        session,
        event_name: str,
        agent_id: str,
        actor: str,
        proposal_id: str | None = None,
        organization_id: str | None = None,
        decision: str | None = None,
        payload: dict | None = None,
        occurred_at: datetime | None = None
    ) -> None:
        session.add(AuditEvent(
            event_name=event_name,
            agent_id=agent_id,
            organization_id=organization_id,
            proposal_id=proposal_id,
            actor=actor,
            decision=decision,
            payload=payload or {},
            occurred_at=occurred_at or utc_now(),
        ))
        await session.flush()

        logger.info(
            "audit_event",
            event_name=event_name,
            agent_id=agent_id,
            proposal_id=proposal_id,
            actor=actor,
            decision=decision,
        )

    async def list_for_proposal(self, session, proposal_id: str) -> list[AuditEvent]:
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.proposal_id == proposal_id)
            .order_by(AuditEvent.occurred_at, AuditEvent.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


def create_uow_provider(session_factory: async_sessionmaker[AsyncSession] | None = None) -> "UoWProvider":
    """
    Фабрика для создания UoW провайдера.

    Usage:
        uow_provider = create_uow_provider()

        async with uow_provider() as uow:
            configuration = await uow.configurations.get(uow.session, agent_id)
    """
    if session_factory is None:
        from database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    class UoWProvider:
        def __init__(self, factory):
            self._factory = factory

        def __call__(self) -> UnitOfWork:
            return UnitOfWork(self._factory)

    return UoWProvider(session_factory)
