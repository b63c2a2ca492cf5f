"""
Pytest Configuration and Fixtures

Each test gets its own SQLite file (aiosqlite), a controllable clock and
fake channel adapters, so nothing leaves the process.
"""
import json
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select

# Add services/evolution to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'services', 'evolution'))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SOUL_APPLY_BACKOFF_SECONDS", "0.001")
# pacing and evidence minimums are exercised through per-agent overrides
os.environ.setdefault("SOUL_COOLDOWN_BETWEEN_PROPOSALS_HOURS", "0")
os.environ.setdefault("SOUL_REQUIRE_MIN_CONVERSATIONS", "0")
os.environ.setdefault("SOUL_REQUIRE_MIN_SESSIONS", "0")

from channel_adapters import (  # noqa: E402
    ChannelAdapter,
    DeliveryResult,
    InboundCommand,
    InboundResolution,
    build_summary,
)
from database import create_engine_for, create_session_factory, init_models  # noqa: E402
from exceptions import InboundParseError  # noqa: E402
from infrastructure.uow import UnitOfWork  # noqa: E402
from models import AuditEvent  # noqa: E402
from schemas import ProposalDraft  # noqa: E402
from service import EvolutionService  # noqa: E402


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

AGENT_ID = "agent-1"
ORG_ID = "org-1"

INITIAL_FIELDS = {
    "name": "Mila",
    "traits": ["warm", "precise"],
    "always_do": ["Greet the customer by name"],
    "never_do": ["Share other customers' data"],
    "communication_style": "Friendly and concise",
    "faq_entries": [{"q": "Do you ship abroad?", "a": "Yes, to the EU."}],
}


class FakeClock:
    """Injectable `now()`; tests move time explicitly"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter(ChannelAdapter):
    """
    Records sends/acks. `fail_times` first sends fail, `always_fail`
    makes every send fail, `raise_on_send` raises instead of failing,
    `raise_on_render` breaks rendering. `{"command": ...}` events are
    owner commands.
    """

    def __init__(
        self,
        channel: str,
        fail_times: int = 0,
        always_fail: bool = False,
        raise_on_send: bool = False,
        raise_on_render: bool = False
    ):
        super().__init__(None)
        self.channel = channel
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.raise_on_send = raise_on_send
        self.raise_on_render = raise_on_render
        self.sent = []
        self.acknowledged = []
        self.commands = []

    def render_summary(self, proposal, notes=None) -> str:
        if self.raise_on_render:
            raise ValueError(f"{self.channel} cannot render")
        return json.dumps(build_summary(proposal, notes))

    async def send(self, address, rendered_summary, resolution_token) -> DeliveryResult:
        self.sent.append({"address": address, "summary": json.loads(rendered_summary), "token": resolution_token})
        if self.raise_on_send:
            raise RuntimeError(f"{self.channel} exploded")
        if self.always_fail or len(self.sent) <= self.fail_times:
            return DeliveryResult(ok=False, detail=f"{self.channel} unavailable")
        return DeliveryResult(ok=True, external_id=f"{self.channel}-{len(self.sent)}")

    def parse_inbound(self, raw_event: dict):
        if "command" in raw_event:
            return InboundCommand(
                command=raw_event["command"],
                agent_id=raw_event["agent_id"],
                version=raw_event.get("version"),
                chat_id=raw_event.get("chat_id"),
            )
        if "action" not in raw_event or "token" not in raw_event:
            raise InboundParseError(self.channel, "missing action/token")
        return InboundResolution(
            action=raw_event["action"],
            token=raw_event["token"],
            edited_value=raw_event.get("edited_value"),
        )

    async def acknowledge(self, raw_event, outcome) -> None:
        self.acknowledged.append(outcome)

    async def acknowledge_command(self, raw_event, outcome) -> None:
        self.commands.append(outcome)


class FakeProducer:
    """ReflectionProducer returning canned drafts per agent"""

    def __init__(self, drafts: dict | None = None):
        self.drafts = drafts or {}
        self.calls = []

    async def draft_proposals(self, agent_id, window):
        self.calls.append((agent_id, window))
        return list(self.drafts.get(agent_id, []))


def make_draft(**overrides) -> ProposalDraft:
    data = {
        "agent_id": AGENT_ID,
        "target_field": "always_do",
        "change_kind": "add",
        "proposed_value": "Offer a follow-up call after every booking",
        "reason": "Customers asked for follow-ups 4 times this week",
        "confidence": "high",
        "trigger_type": "live_interaction",
    }
    data.update(overrides)
    return ProposalDraft(**data)


async def admit(service, **overrides):
    """Admit a draft through the gate (no dispatch) and return the pending proposal"""
    result = await service.gate.admit(make_draft(**overrides))
    assert result.admitted, f"{result.reason}: {result.detail}"
    return result.proposal


async def audit_events(uow_factory, event_name: str) -> list:
    async with uow_factory() as uow:
        result = await uow.session.execute(
            select(AuditEvent).where(AuditEvent.event_name == event_name).order_by(AuditEvent.occurred_at)
        )
        return list(result.scalars().all())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-based SQLite per test (real cross-connection locking)"""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'soul.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    session_factory = create_session_factory(engine)
    return lambda: UnitOfWork(session_factory)


@pytest.fixture
def adapters() -> dict:
    return {
        "telegram": FakeAdapter("telegram"),
        "webhook": FakeAdapter("webhook"),
        "email": FakeAdapter("email"),
    }


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def service(uow_factory, clock, adapters, producer) -> EvolutionService:
    return EvolutionService(
        uow_factory=uow_factory,
        clock=clock,
        adapters=adapters,
        producer=producer,
        dispatch_mode="inline",
    )


@pytest_asyncio.fixture
async def agent(service):
    """Bootstrapped agent with telegram + email channels"""
    configuration = await service.bootstrap_configuration(AGENT_ID, ORG_ID, INITIAL_FIELDS)
    await service.register_channel(ORG_ID, "telegram", "100500")
    await service.register_channel(ORG_ID, "email", "owner@example.com")
    return configuration
