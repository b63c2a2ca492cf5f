"""
CALIBRATION TRACKER TESTS
=========================

record_outcome идемпотентен по proposal_id; CalibrationRecord - кэш,
пересчитываемый из истории.
"""
import pytest

from calibration_tracker import CalibrationTracker
from conftest import AGENT_ID

pytestmark = pytest.mark.asyncio(loop_scope="function")


@pytest.fixture
def tracker(uow_factory, clock):
    return CalibrationTracker(uow_factory, clock=clock)


class TestRecordOutcome:

    async def test_outcome_is_recorded_once(self, tracker):
        assert await tracker.record_outcome(AGENT_ID, "p-1", "approved", 120.0, "telegram") is True
        assert await tracker.record_outcome(AGENT_ID, "p-1", "rejected", 5.0, "email") is False

        record = await tracker.get_record(AGENT_ID)
        assert record.approved_count == 1
        assert record.rejected_count == 0

    async def test_unknown_outcome_kind(self, tracker):
        with pytest.raises(ValueError):
            await tracker.record_outcome(AGENT_ID, "p-1", "maybe", None, None)

    async def test_record_mirrors_budget(self, tracker, clock):
        for i in range(3):
            await tracker.record_outcome(AGENT_ID, f"p-{i}", "rejected", 60.0, "telegram")
            clock.advance(minutes=5)

        record = await tracker.get_record(AGENT_ID)
        budget = await tracker.get_budget(AGENT_ID)

        assert record.rejected_count == 3
        assert record.cooldown_until == budget.cooldown_until
        assert record.max_per_day == budget.max_per_day
        assert budget.in_cooldown(clock())

    async def test_budget_without_history(self, tracker):
        budget = await tracker.get_budget(AGENT_ID)
        assert budget.sample_size == 0
        assert await tracker.get_record(AGENT_ID) is None
