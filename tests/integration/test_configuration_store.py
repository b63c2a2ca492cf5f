"""
CONFIGURATION STORE TESTS
=========================

Версии без дыр, snapshot на каждую версию, rollback = новая версия,
optimistic concurrency на UPDATE ... WHERE version.
"""
import asyncio

import pytest

from configuration_store import ConfigurationStore
from conftest import AGENT_ID, ORG_ID, INITIAL_FIELDS, audit_events
from domain.soul_fields import build_mutator
from exceptions import (
    ConcurrentModification,
    ConfigurationAlreadyExists,
    ConfigurationNotFound,
    UnsupportedChange,
    VersionNotFound,
)

pytestmark = pytest.mark.asyncio(loop_scope="function")


@pytest.fixture
def store(uow_factory, clock):
    return ConfigurationStore(uow_factory, clock=clock)


async def assert_versions_contiguous(store, agent_id):
    configuration = await store.get_active(agent_id)
    history = await store.get_history(agent_id)
    assert sorted(s.version for s in history) == list(range(1, configuration.version + 1))
    latest = history[0]
    assert latest.version == configuration.version
    assert latest.fields == configuration.fields


class TestBootstrap:

    async def test_bootstrap_creates_version_one_with_snapshot(self, store):
        configuration = await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)

        assert configuration.version == 1
        assert configuration.protected_fields == ["never_do", "blocked_topics", "escalation_triggers"]

        snapshot = await store.get_snapshot(AGENT_ID, 1)
        assert snapshot.change_type == "initial"
        assert snapshot.fields == INITIAL_FIELDS

    async def test_second_bootstrap_fails(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        with pytest.raises(ConfigurationAlreadyExists):
            await store.bootstrap(AGENT_ID, ORG_ID, {})

    async def test_bootstrap_rejects_unknown_fields(self, store):
        with pytest.raises(UnsupportedChange):
            await store.bootstrap(AGENT_ID, ORG_ID, {"favourite_color": "blue"})

    async def test_missing_configuration(self, store):
        with pytest.raises(ConfigurationNotFound):
            await store.get_active("nobody")


class TestSettings:

    async def test_settings_do_not_create_a_version(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS, policy_overrides={"max_pending_proposals": 2})

        updated = await store.update_settings(
            AGENT_ID, evolution_enabled=False, policy_overrides={"require_min_conversations": 5, "bogus": 1}
        )

        assert updated.evolution_enabled is False
        assert updated.policy_overrides == {"require_min_conversations": 5}
        active = await store.get_active(AGENT_ID)
        assert active.version == 1
        assert active.policy_overrides == {"require_min_conversations": 5}
        assert len(await store.get_history(AGENT_ID)) == 1

    async def test_omitted_settings_are_kept(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS, policy_overrides={"max_pending_proposals": 2})

        updated = await store.update_settings(AGENT_ID, evolution_enabled=False)

        assert updated.policy_overrides == {"max_pending_proposals": 2}

    async def test_unknown_agent(self, store):
        with pytest.raises(ConfigurationNotFound):
            await store.update_settings("nobody", evolution_enabled=False)


class TestApplyChange:

    async def test_each_change_adds_exactly_one_version(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)

        v2 = await store.apply_change(AGENT_ID, build_mutator("always_do", "add", "Say thanks"), "p-1")
        v3 = await store.apply_change(AGENT_ID, build_mutator("communication_style", "modify", "Formal"), "p-2")

        assert (v2, v3) == (2, 3)
        configuration = await store.get_active(AGENT_ID)
        assert configuration.fields["always_do"][-1] == "Say thanks"
        assert configuration.fields["communication_style"] == "Formal"

        snapshot = await store.get_snapshot(AGENT_ID, 2)
        assert snapshot.change_type == "proposal_applied"
        assert snapshot.causing_proposal_id == "p-1"
        await assert_versions_contiguous(store, AGENT_ID)

    async def test_previous_snapshot_is_not_touched(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        await store.apply_change(AGENT_ID, build_mutator("always_do", "add", "Say thanks"), "p-1")

        snapshot = await store.get_snapshot(AGENT_ID, 1)
        assert snapshot.fields == INITIAL_FIELDS

    async def test_stale_version_raises_concurrent_modification(self, store, uow_factory):
        """
        SCENARIO: читаем v1, кто-то пишет v2, мы пишем по старой версии

        EXPECTED: ConcurrentModification, live row и snapshots не тронуты
        """
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        async with uow_factory() as uow:
            stale = await uow.configurations.get(uow.session, AGENT_ID)

        await store.apply_change(AGENT_ID, build_mutator("always_do", "add", "first"), "p-1")

        with pytest.raises(ConcurrentModification):
            async with uow_factory() as uow:
                await store._write_version(uow, stale, {"always_do": ["second"]}, "proposal_applied", "test")

        configuration = await store.get_active(AGENT_ID)
        assert configuration.version == 2
        assert "second" not in configuration.fields["always_do"]
        await assert_versions_contiguous(store, AGENT_ID)

    async def test_mutator_error_leaves_no_trace(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)

        def broken(fields):
            raise UnsupportedChange("always_do", "add", "boom")

        with pytest.raises(UnsupportedChange):
            await store.apply_change(AGENT_ID, broken, "p-1")

        configuration = await store.get_active(AGENT_ID)
        assert configuration.version == 1
        await assert_versions_contiguous(store, AGENT_ID)

    async def test_concurrent_writers_never_leave_gaps(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)

        results = await asyncio.gather(
            *[
                store.apply_change(AGENT_ID, build_mutator("always_do", "add", f"rule {i}"), f"p-{i}")
                for i in range(4)
            ],
            return_exceptions=True,
        )

        written = [r for r in results if isinstance(r, int)]
        conflicts = [r for r in results if isinstance(r, ConcurrentModification)]
        assert len(written) + len(conflicts) == 4
        assert sorted(written) == list(range(2, 2 + len(written)))
        await assert_versions_contiguous(store, AGENT_ID)


class TestRollback:

    async def test_rollback_is_a_new_version(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        await store.apply_change(AGENT_ID, build_mutator("always_do", "add", "Say thanks"), "p-1")
        await store.apply_change(AGENT_ID, build_mutator("communication_style", "modify", "Formal"), "p-2")

        new_version = await store.rollback(AGENT_ID, 1, requested_by="owner")

        assert new_version == 4
        configuration = await store.get_active(AGENT_ID)
        assert configuration.fields == INITIAL_FIELDS

        snapshot = await store.get_snapshot(AGENT_ID, 4)
        assert snapshot.change_type == "rollback"
        assert snapshot.rollback_target_version == 1
        assert snapshot.changed_by == "owner"
        await assert_versions_contiguous(store, AGENT_ID)

    async def test_rollback_keeps_current_protected_fields(self, store, uow_factory):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS, protected_fields=["never_do"])
        async with uow_factory() as uow:
            configuration = await uow.configurations.get(uow.session, AGENT_ID)
            configuration.protected_fields = ["never_do", "always_do"]

        await store.rollback(AGENT_ID, 1, requested_by="owner")

        configuration = await store.get_active(AGENT_ID)
        assert configuration.protected_fields == ["never_do", "always_do"]

    async def test_rollback_to_unknown_version(self, store):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        with pytest.raises(VersionNotFound):
            await store.rollback(AGENT_ID, 99, requested_by="owner")

        configuration = await store.get_active(AGENT_ID)
        assert configuration.version == 1

    async def test_rollback_writes_audit_event(self, store, uow_factory):
        await store.bootstrap(AGENT_ID, ORG_ID, INITIAL_FIELDS)
        await store.apply_change(AGENT_ID, build_mutator("always_do", "add", "x"), "p-1")
        await store.rollback(AGENT_ID, 1, requested_by="owner")

        events = await audit_events(uow_factory, "rollback_executed")
        assert len(events) == 1
        assert events[0].payload["target_version"] == 1
