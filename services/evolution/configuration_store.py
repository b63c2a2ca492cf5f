"""
CONFIGURATION STORE - versioned soul configuration
==================================================

Единственный writer для SoulConfiguration и ConfigurationSnapshot.

Every write is one transaction:
    read live row → mutate deep copy → UPDATE ... WHERE version = :read_version
    → INSERT snapshot(version + 1)

Zero matched rows (or a snapshot unique-key collision) means somebody else
won the race → ConcurrentModification, the caller retries.

Author: Soul Evolution Team
"""
import asyncio
import copy
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError

import config
from domain.evolution_policy import normalize_overrides
from domain.soul_fields import parse_field
from exceptions import (
    ConfigurationNotFound,
    ConfigurationAlreadyExists,
    ConcurrentModification,
    VersionNotFound,
)
from infrastructure.uow import UnitOfWork, create_uow_provider
from logging_config import get_logger
from models import SoulConfiguration, ConfigurationSnapshot, ChangeType, utc_now

logger = get_logger(__name__)


class ConfigurationStore:

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] | None = None,
        policy: dict | None = None
    ):
        self._uow_factory = uow_factory or create_uow_provider()
        self._clock = clock or utc_now
        self._policy = policy or config.PROPOSAL_POLICY

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_active(self, agent_id: str) -> SoulConfiguration:
        async with self._uow_factory() as uow:
            configuration = await uow.configurations.get(uow.session, agent_id)
        if configuration is None:
            raise ConfigurationNotFound(agent_id)
        return configuration

    async def get_history(self, agent_id: str, limit: int | None = None) -> list[ConfigurationSnapshot]:
        """Snapshots newest first"""
        async with self._uow_factory() as uow:
            if await uow.configurations.get(uow.session, agent_id) is None:
                raise ConfigurationNotFound(agent_id)
            return await uow.snapshots.list(uow.session, agent_id, limit=limit)

    async def get_snapshot(self, agent_id: str, version: int) -> ConfigurationSnapshot:
        async with self._uow_factory() as uow:
            snapshot = await uow.snapshots.get(uow.session, agent_id, version)
        if snapshot is None:
            raise VersionNotFound(agent_id, version)
        return snapshot

    # =========================================================================
    # Writes
    # =========================================================================

    async def bootstrap(
        self,
        agent_id: str,
        organization_id: str,
        fields: dict,
        protected_fields: list[str] | None = None,
        evolution_enabled: bool = True,
        policy_overrides: dict | None = None,
        created_by: str = "operator"
    ) -> SoulConfiguration:
        """Version 1 + its `initial` snapshot"""
        for name in fields:
            parse_field(name)
        protected = list(config.DEFAULT_PROTECTED_FIELDS if protected_fields is None else protected_fields)
        for name in protected:
            parse_field(name)

        now = self._clock()
        configuration = SoulConfiguration(
            agent_id=agent_id,
            organization_id=organization_id,
            version=1,
            fields=copy.deepcopy(fields),
            protected_fields=protected,
            evolution_enabled=evolution_enabled,
            policy_overrides=normalize_overrides(policy_overrides),
            last_updated_at=now,
            last_updated_by=created_by,
        )

        try:
            async with self._uow_factory() as uow:
                if await uow.configurations.get(uow.session, agent_id) is not None:
                    raise ConfigurationAlreadyExists(agent_id)
                await uow.configurations.add(uow.session, configuration)
                await uow.snapshots.add(uow.session, ConfigurationSnapshot(
                    agent_id=agent_id,
                    version=1,
                    fields=copy.deepcopy(fields),
                    protected_fields=protected,
                    change_type=ChangeType.INITIAL.value,
                    changed_by=created_by,
                    created_at=now,
                ))
        except IntegrityError:
            raise ConfigurationAlreadyExists(agent_id)

        logger.info("configuration_bootstrapped", agent_id=agent_id, organization_id=organization_id)
        return configuration

    async def apply_change(
        self,
        agent_id: str,
        mutator: Callable[[dict], None],
        causing_proposal_id: str | None,
        uow: UnitOfWork | None = None,
        changed_by: str = "agent_self_after_owner_approval"
    ) -> int:
        """
        Transactional read-modify-write.

        Args:
            mutator: edits a deep copy of Configuration.fields in place
            uow: existing UnitOfWork to join (the lifecycle writes
                approved → applied in the same transaction); otherwise a
                fresh one is opened and committed here

        Returns:
            new version

        Raises:
            ConfigurationNotFound, ConcurrentModification, UnsupportedChange
        """
        if uow is not None:
            return await self._apply_in(uow, agent_id, mutator, causing_proposal_id, changed_by)

        async with self._uow_factory() as own_uow:
            return await self._apply_in(own_uow, agent_id, mutator, causing_proposal_id, changed_by)

    async def rollback(self, agent_id: str, target_version: int, requested_by: str) -> int:
        """
        Restore `fields` of `target_version` as a brand new version.

        protected_fields stay as they are now: a rollback never weakens
        safety boundaries. Retried on ConcurrentModification.
        """
        attempts = self._policy["apply_max_attempts"]
        backoff = self._policy["apply_backoff_seconds"]

        for attempt in range(1, attempts + 1):
            try:
                async with self._uow_factory() as uow:
                    snapshot = await uow.snapshots.get(uow.session, agent_id, target_version)
                    if snapshot is None:
                        raise VersionNotFound(agent_id, target_version)

                    current = await uow.configurations.get(uow.session, agent_id)
                    if current is None:
                        raise ConfigurationNotFound(agent_id)

                    new_version = await self._write_version(
                        uow,
                        current,
                        new_fields=copy.deepcopy(snapshot.fields),
                        change_type=ChangeType.ROLLBACK.value,
                        changed_by=requested_by,
                        rollback_target_version=target_version,
                    )
                    await uow.audit.log(
                        uow.session,
                        "rollback_executed",
                        agent_id=agent_id,
                        organization_id=current.organization_id,
                        actor=requested_by,
                        payload={
                            "from_version": current.version,
                            "target_version": target_version,
                            "new_version": new_version,
                        },
                        occurred_at=self._clock(),
                    )
            except ConcurrentModification:
                logger.warning(
                    "rollback_conflict",
                    agent_id=agent_id,
                    target_version=target_version,
                    attempt=attempt,
                )
                if attempt == attempts:
                    raise
                await asyncio.sleep(backoff * (2 ** (attempt - 1)))
                continue

            logger.info(
                "configuration_rolled_back",
                agent_id=agent_id,
                target_version=target_version,
                new_version=new_version,
                requested_by=requested_by,
            )
            return new_version

    async def update_settings(
        self,
        agent_id: str,
        evolution_enabled: bool | None = None,
        policy_overrides: dict | None = None
    ) -> SoulConfiguration:
        """
        Operator settings: reflection opt-out and policy overrides.

        Not a versioned change, fields and version stay untouched. Overrides
        replace the previous set; invalid entries are dropped.
        """
        async with self._uow_factory() as uow:
            current = await uow.configurations.get(uow.session, agent_id)
            if current is None:
                raise ConfigurationNotFound(agent_id)
            if evolution_enabled is not None:
                current.evolution_enabled = evolution_enabled
            if policy_overrides is not None:
                current.policy_overrides = normalize_overrides(policy_overrides)

        logger.info(
            "configuration_settings_updated",
            agent_id=agent_id,
            evolution_enabled=current.evolution_enabled,
            policy_overrides=current.policy_overrides,
        )
        return current

    # =========================================================================
    # Internals
    # =========================================================================

    async def _apply_in(
        self,
        uow: UnitOfWork,
        agent_id: str,
        mutator: Callable[[dict], None],
        causing_proposal_id: str | None,
        changed_by: str
    ) -> int:
        current = await uow.configurations.get(uow.session, agent_id)
        if current is None:
            raise ConfigurationNotFound(agent_id)

        new_fields = copy.deepcopy(current.fields or {})
        mutator(new_fields)

        new_version = await self._write_version(
            uow,
            current,
            new_fields=new_fields,
            change_type=ChangeType.PROPOSAL_APPLIED.value,
            changed_by=changed_by,
            causing_proposal_id=causing_proposal_id,
        )
        logger.info(
            "configuration_version_written",
            agent_id=agent_id,
            version=new_version,
            causing_proposal_id=causing_proposal_id,
        )
        return new_version

    async def _write_version(
        self,
        uow: UnitOfWork,
        current: SoulConfiguration,
        new_fields: dict,
        change_type: str,
        changed_by: str,
        causing_proposal_id: str | None = None,
        rollback_target_version: int | None = None
    ) -> int:
        read_version = current.version
        new_version = read_version + 1
        protected = list(current.protected_fields or [])
        now = self._clock()

        won = await uow.configurations.update_if_version(
            uow.session,
            current.agent_id,
            read_version,
            version=new_version,
            fields=new_fields,
            last_updated_at=now,
            last_updated_by=changed_by,
        )
        if not won:
            raise ConcurrentModification(current.agent_id, read_version)

        try:
            await uow.snapshots.add(uow.session, ConfigurationSnapshot(
                agent_id=current.agent_id,
                version=new_version,
                fields=new_fields,
                protected_fields=protected,
                change_type=change_type,
                causing_proposal_id=causing_proposal_id,
                rollback_target_version=rollback_target_version,
                changed_by=changed_by,
                created_at=now,
            ))
        except IntegrityError:
            raise ConcurrentModification(current.agent_id, read_version)

        return new_version
