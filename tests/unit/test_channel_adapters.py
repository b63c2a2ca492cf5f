"""
CHANNEL ADAPTER TESTS

HTTP мокается через httpx.MockTransport, ничего не уходит наружу.
"""
import json
from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest

from channel_adapters import (
    EmailAdapter,
    InboundCommand,
    TelegramAdapter,
    WebhookAdapter,
    build_summary,
    escape_markdown,
    render_confirmation_page,
)
from conftest import T0
from exceptions import InboundParseError
from notification_fanout import CommandOutcome
from proposal_lifecycle import ResolutionOutcome


def make_proposal(**overrides):
    data = {
        "id": "p-1",
        "agent_id": "agent-1",
        "change_kind": "add",
        "target_field": "always_do",
        "current_value": None,
        "proposed_value": "Offer a follow-up call",
        "reason": "Asked 4 times",
        "confidence": "high",
        "risk_level": "low",
        "telemetry_summary": "4 follow-up requests",
        "expires_at": T0 + timedelta(hours=72),
    }
    data.update(overrides)
    return SimpleNamespace(**data)


class Recorder:
    """MockTransport handler that remembers every request"""

    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True, "result": {"message_id": 42}}
        self.headers = headers or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body, headers=self.headers)

    def json(self, index=0) -> dict:
        return json.loads(self.requests[index].content)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSummary:

    def test_summary_carries_review_payload(self):
        summary = build_summary(make_proposal(), ["careful"])
        assert summary["action"] == "ADD to"
        assert summary["risk_level"] == "low"
        assert summary["notes"] == ["careful"]
        assert any("4 follow-up requests" in item for item in summary["review_checklist"])
        assert summary["expires_at"] == (T0 + timedelta(hours=72)).isoformat()


class TestTelegram:

    @pytest.mark.asyncio
    async def test_send_posts_inline_keyboard(self):
        recorder = Recorder()
        adapter = TelegramAdapter(client_for(recorder), bot_token="123:abc", api_url="https://tg.test")

        result = await adapter.send("100500", adapter.render_summary(make_proposal()), "tok-1")

        assert result.ok is True
        assert result.external_id == "42"
        request = recorder.requests[0]
        assert str(request.url) == "https://tg.test/bot123:abc/sendMessage"
        payload = recorder.json()
        assert payload["chat_id"] == "100500"
        buttons = payload["reply_markup"]["inline_keyboard"][0]
        assert [b["callback_data"] for b in buttons] == ["soul_approve:tok-1", "soul_reject:tok-1"]
        assert "Offer a follow-up call" in payload["text"]

    @pytest.mark.asyncio
    async def test_api_error_is_a_failed_delivery(self):
        recorder = Recorder(body={"ok": False, "description": "chat not found"})
        adapter = TelegramAdapter(client_for(recorder), bot_token="123:abc", api_url="https://tg.test")

        result = await adapter.send("1", "text", "tok")

        assert result.ok is False
        assert result.detail == "chat not found"

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        adapter = TelegramAdapter(client_for(Recorder(status_code=502, body={})), bot_token="x", api_url="https://tg.test")
        result = await adapter.send("1", "text", "tok")
        assert result.ok is False
        assert result.detail.startswith("HTTP 502")

    @pytest.mark.asyncio
    async def test_without_bot_token(self):
        adapter = TelegramAdapter(client_for(Recorder()), bot_token="", api_url="https://tg.test")
        result = await adapter.send("1", "text", "tok")
        assert result.ok is False

    def test_parse_callback(self):
        adapter = TelegramAdapter(bot_token="x")
        inbound = adapter.parse_inbound({"callback_query": {"id": "cb", "data": "soul_reject:tok-9"}})
        assert (inbound.action, inbound.token) == ("reject", "tok-9")

    def test_parse_edit_command(self):
        adapter = TelegramAdapter(bot_token="x")
        inbound = adapter.parse_inbound({"message": {"text": "/soul edit tok-9 Call back within a day"}})
        assert inbound.action == "edit"
        assert inbound.token == "tok-9"
        assert inbound.edited_value == "Call back within a day"

    @pytest.mark.parametrize("event", [
        {"callback_query": {"data": "other_bot:tok"}},
        {"message": {"text": "hello"}},
        {"message": {"text": "/soul"}},
        {"message": {"text": "/soul edit tok"}},
    ])
    def test_parse_rejects_garbage(self, event):
        with pytest.raises(InboundParseError):
            TelegramAdapter(bot_token="x").parse_inbound(event)

    @pytest.mark.asyncio
    async def test_acknowledge_answers_callback(self):
        recorder = Recorder(body={"ok": True})
        adapter = TelegramAdapter(client_for(recorder), bot_token="x", api_url="https://tg.test")
        outcome = ResolutionOutcome("p-1", "approve", "applied", True, "already approved via email at 09:00")

        await adapter.acknowledge({"callback_query": {"id": "cb-1", "data": "soul_approve:t"}}, outcome)

        assert str(recorder.requests[0].url).endswith("/answerCallbackQuery")
        assert recorder.json() == {"callback_query_id": "cb-1", "text": "already approved via email at 09:00"}


    def test_markdown_is_escaped(self):
        assert escape_markdown("snake_case *bold* `code` [link]") == "snake\\_case \\*bold\\* \\`code\\` \\[link]"

    def test_summary_escapes_user_text(self):
        adapter = TelegramAdapter(bot_token="x")
        text = adapter.render_summary(make_proposal(
            agent_id="shop_bot",
            proposed_value="Use *stars* for_emphasis",
            reason="Guests liked [promo] codes",
        ))

        assert "*shop\\_bot* wants to update its personality" in text
        assert '"Use \\*stars\\* for\\_emphasis"' in text
        assert "Guests liked \\[promo] codes" in text

    def test_parse_history_callback(self):
        inbound = TelegramAdapter(bot_token="x").parse_inbound({"callback_query": {
            "id": "cb", "data": "soul_history_agent-1", "message": {"chat": {"id": 100500}},
        }})
        assert inbound == InboundCommand(command="history", agent_id="agent-1", chat_id="100500")

    def test_parse_rollback_callback(self):
        inbound = TelegramAdapter(bot_token="x").parse_inbound({"callback_query": {
            "id": "cb", "data": "soul_rollback_agent-1:3", "message": {"chat": {"id": 100500}},
        }})
        assert inbound == InboundCommand(command="rollback", agent_id="agent-1", version=3, chat_id="100500")

    def test_parse_text_commands(self):
        adapter = TelegramAdapter(bot_token="x")
        chat = {"id": 100500}

        history = adapter.parse_inbound({"message": {"text": "/soul history agent-1", "chat": chat}})
        rollback = adapter.parse_inbound({"message": {"text": "/soul rollback agent-1 2", "chat": chat}})

        assert history == InboundCommand(command="history", agent_id="agent-1", chat_id="100500")
        assert rollback == InboundCommand(command="rollback", agent_id="agent-1", version=2, chat_id="100500")

    @pytest.mark.parametrize("event", [
        {"callback_query": {"data": "soul_rollback_agent-1:latest"}},
        {"message": {"text": "/soul rollback agent-1 v2"}},
    ])
    def test_rollback_needs_a_version_number(self, event):
        with pytest.raises(InboundParseError):
            TelegramAdapter(bot_token="x").parse_inbound(event)

    @pytest.mark.asyncio
    async def test_history_reply_offers_rollback_buttons(self):
        recorder = Recorder(body={"ok": True})
        adapter = TelegramAdapter(client_for(recorder), bot_token="x", api_url="https://tg.test")
        outcome = CommandOutcome("history", "agent-1", "Soul history:\nv3\nv2\nv1", rollback_versions=[2, 1])
        event = {"callback_query": {"id": "cb-2", "data": "soul_history_agent-1", "message": {"chat": {"id": 100500}}}}

        await adapter.acknowledge_command(event, outcome)

        assert str(recorder.requests[0].url).endswith("/answerCallbackQuery")
        assert recorder.json(0) == {"callback_query_id": "cb-2", "text": "Loading history..."}
        message = recorder.json(1)
        assert str(recorder.requests[1].url).endswith("/sendMessage")
        assert message["chat_id"] == "100500"
        assert message["text"] == outcome.message
        assert "parse_mode" not in message
        assert [row[0]["callback_data"] for row in message["reply_markup"]["inline_keyboard"]] == [
            "soul_rollback_agent-1:2",
            "soul_rollback_agent-1:1",
        ]


class TestWebhook:

    @pytest.mark.asyncio
    async def test_send_posts_event(self):
        recorder = Recorder(body={}, headers={"x-request-id": "req-7"})
        adapter = WebhookAdapter(client_for(recorder))

        result = await adapter.send("https://hooks.test/soul", adapter.render_summary(make_proposal()), "tok-2")

        assert result.ok is True
        assert result.external_id == "req-7"
        payload = recorder.json()
        assert payload["event"] == "soul.proposal"
        assert payload["resolution_token"] == "tok-2"
        assert payload["summary"]["proposal_id"] == "p-1"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def explode(request):
            raise httpx.ConnectError("refused", request=request)

        result = await WebhookAdapter(client_for(explode)).send("https://hooks.test", "{}", "tok")

        assert result.ok is False
        assert "ConnectError" in result.detail

    def test_parse_structured_and_text(self):
        adapter = WebhookAdapter()
        inbound = adapter.parse_inbound({"action": "approve", "token": "t", "proposal_id": "p-1"})
        assert (inbound.action, inbound.token, inbound.proposal_id) == ("approve", "t", "p-1")

        inbound = adapter.parse_inbound({"text": "reject t2"})
        assert (inbound.action, inbound.token) == ("reject", "t2")

    def test_edit_needs_value(self):
        with pytest.raises(InboundParseError):
            WebhookAdapter().parse_inbound({"action": "edit", "token": "t"})


class TestEmail:

    @pytest.mark.asyncio
    async def test_send_includes_resolution_links(self):
        recorder = Recorder(body={"id": "msg-1"})
        adapter = EmailAdapter(
            client_for(recorder),
            api_url="https://mail.test/send",
            api_key="secret",
            sender="soul@test",
            public_base_url="https://soul.test/",
        )

        result = await adapter.send("owner@example.com", adapter.render_summary(make_proposal()), "tok-3")

        assert result.ok is True
        assert result.external_id == "msg-1"
        assert recorder.requests[0].headers["Authorization"] == "Bearer secret"
        payload = recorder.json()
        assert payload["to"] == "owner@example.com"
        assert "https://soul.test/soul/resolve/tok-3?action=approve" in payload["text"]
        assert "https://soul.test/soul/resolve/tok-3?action=reject" in payload["text"]

    @pytest.mark.asyncio
    async def test_unconfigured_api(self):
        adapter = EmailAdapter(client_for(Recorder()), api_url="")
        result = await adapter.send("owner@example.com", "text", "tok")
        assert result.ok is False

    def test_parse_link_click(self):
        inbound = EmailAdapter().parse_inbound({"token": "t", "action": "approve"})
        assert (inbound.action, inbound.token) == ("approve", "t")

        with pytest.raises(InboundParseError):
            EmailAdapter().parse_inbound({"token": "t", "action": "edit"})

    def test_confirmation_page_posts_the_decision(self):
        page = render_confirmation_page(
            make_proposal(status="pending", proposed_value="<b>Always</b> upsell"), "approve", "tok-3"
        )

        assert '<form method="post" action="/soul/resolve/tok-3?action=approve">' in page
        assert "Confirm approve" in page
        assert "&lt;b&gt;Always&lt;/b&gt; upsell" in page
        assert "<b>Always</b>" not in page

    def test_confirmation_page_for_resolved_proposal(self):
        page = render_confirmation_page(make_proposal(status="rejected"), "approve", "tok-3")

        assert "<form" not in page
        assert "already rejected" in page
