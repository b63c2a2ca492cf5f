"""
CHANNEL ADAPTERS - thin delivery/inbound wrappers per channel
=============================================================

Каждый адаптер умеет четыре вещи:
    render_summary(proposal, notes)              → str
    send(address, rendered, resolution_token)    → DeliveryResult
    parse_inbound(raw_event)                     → InboundResolution
    acknowledge(raw_event, outcome)              → None

Adapters never touch the database. The resolution token each one carries
is the per-channel token from Proposal.resolution_tokens.

Telegram also carries owner commands that are not proposal resolutions:
version history and rollback (InboundCommand, acknowledge_command).

Author: Soul Evolution Team
"""
import html
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

import config
from domain.soul_fields import review_checklist
from exceptions import InboundParseError
from logging_config import get_logger

logger = get_logger(__name__)


ACTION_LABELS = {
    "add": "ADD to",
    "modify": "CHANGE",
    "remove": "REMOVE from",
    "add_faq": "ADD FAQ to",
}

INBOUND_ACTIONS = {"approve", "reject", "edit"}


@dataclass
class DeliveryResult:
    ok: bool
    detail: str | None = None
    external_id: str | None = None


@dataclass
class InboundResolution:
    """Parsed human reply: which action, which token, optional edit"""
    action: str
    token: str
    edited_value: str | None = None
    proposal_id: str | None = None


@dataclass
class InboundCommand:
    """Owner command from a chat: `history` or `rollback` of one agent"""
    command: str
    agent_id: str
    version: int | None = None
    chat_id: str | None = None


def build_summary(proposal, notes: list[str] | None = None) -> dict:
    """Channel-neutral review payload"""
    return {
        "proposal_id": proposal.id,
        "agent_id": proposal.agent_id,
        "action": ACTION_LABELS.get(proposal.change_kind, proposal.change_kind),
        "change_kind": proposal.change_kind,
        "target_field": proposal.target_field,
        "current_value": proposal.current_value,
        "proposed_value": proposal.proposed_value,
        "reason": proposal.reason,
        "confidence": proposal.confidence,
        "risk_level": proposal.risk_level,
        "review_checklist": review_checklist(
            proposal.target_field,
            proposal.change_kind,
            proposal.telemetry_summary,
        ),
        "expires_at": proposal.expires_at.isoformat(),
        "notes": list(notes or []),
    }


class ChannelAdapter(ABC):
    channel: str = ""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    @abstractmethod
    def render_summary(self, proposal, notes: list[str] | None = None) -> str:
        ...

    @abstractmethod
    async def send(self, address: str, rendered_summary: str, resolution_token: str) -> DeliveryResult:
        ...

    @abstractmethod
    def parse_inbound(self, raw_event: dict) -> InboundResolution:
        ...

    async def acknowledge(self, raw_event: dict, outcome) -> None:
        """Reply to the human; default is the HTTP response itself"""
        return None

    async def acknowledge_command(self, raw_event: dict, outcome) -> None:
        """Reply to an owner command; only chat channels have any"""
        return None

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            return await client.post(url, **kwargs)

    def _parse_text_command(self, text: str) -> InboundResolution:
        """
        'approve <token>' | 'reject <token>' | 'edit <token> <new value>'
        """
        parts = (text or "").strip().split(maxsplit=2)
        if len(parts) < 2 or parts[0].lower() not in INBOUND_ACTIONS:
            raise InboundParseError(self.channel, f"unrecognized command '{text}'")

        action = parts[0].lower()
        token = parts[1]
        edited_value = parts[2].strip() if len(parts) == 3 else None
        if action == "edit" and not edited_value:
            raise InboundParseError(self.channel, "edit requires a new value")
        return InboundResolution(action=action, token=token, edited_value=edited_value)


# =============================================================================
# Telegram
# =============================================================================

MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


def escape_markdown(text) -> str:
    """Telegram legacy Markdown: escape _ * ` [ outside entities"""
    return MARKDOWN_SPECIAL.sub(r"\\\1", str(text))


class TelegramAdapter(ChannelAdapter):
    """
    Bot API over httpx.

    Outbound: Markdown message + inline keyboard
        callback_data = soul_approve:<token> | soul_reject:<token>
    Inbound: callback_query or '/soul approve|reject <token>',
        '/soul edit <token> <new value>'
    Owner commands:
        soul_history_<agent_id>              → version list + rollback buttons
        soul_rollback_<agent_id>:<version>   → rollback
        '/soul history <agent_id>', '/soul rollback <agent_id> <version>'
    """
    channel = "telegram"

    CALLBACK_PATTERN = re.compile(r"^soul_(approve|reject):(\S+)$")
    HISTORY_PATTERN = re.compile(r"^soul_history_(\S+)$")
    ROLLBACK_PATTERN = re.compile(r"^soul_rollback_(\S+):(\S+)$")

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        bot_token: str | None = None,
        api_url: str | None = None
    ):
        super().__init__(client)
        self._bot_token = bot_token if bot_token is not None else config.TELEGRAM_BOT_TOKEN
        self._api_url = (api_url or config.TELEGRAM_API_URL).rstrip("/")

    def _method_url(self, method: str) -> str:
        return f"{self._api_url}/bot{self._bot_token}/{method}"

    def render_summary(self, proposal, notes: list[str] | None = None) -> str:
        summary = build_summary(proposal, notes)
        lines = [
            f"*{escape_markdown(summary['agent_id'])}* wants to update its personality:\n",
            f"*{summary['action']}* `{summary['target_field']}`:",
            f"\"{escape_markdown(summary['proposed_value'])}\"\n",
            f"*Reason:* {escape_markdown(summary['reason'])}",
            f"*Operator risk:* {summary['risk_level'].upper()}",
        ]
        if summary["current_value"]:
            lines.insert(2, f"*Currently:* \"{escape_markdown(summary['current_value'])}\"")
        if summary["review_checklist"]:
            checklist = " | ".join(escape_markdown(item) for item in summary["review_checklist"][:2])
            lines.append(f"*Review checklist:* {checklist}")
        for note in summary["notes"]:
            lines.append(f"_{escape_markdown(note)}_")
        lines.append(f"Expires: {summary['expires_at']}")
        return "\n".join(lines)

    async def send(self, address: str, rendered_summary: str, resolution_token: str) -> DeliveryResult:
        if not self._bot_token:
            return DeliveryResult(ok=False, detail="telegram bot token not configured")

        payload = {
            "chat_id": address,
            "text": rendered_summary,
            "parse_mode": "Markdown",
            "reply_markup": {
                "inline_keyboard": [[
                    {"text": "Approve", "callback_data": f"soul_approve:{resolution_token}"},
                    {"text": "Reject", "callback_data": f"soul_reject:{resolution_token}"},
                ]]
            },
        }
        try:
            response = await self._post(self._method_url("sendMessage"), json=payload)
        except httpx.HTTPError as e:
            return DeliveryResult(ok=False, detail=f"{type(e).__name__}: {e}")

        if response.status_code != 200:
            return DeliveryResult(ok=False, detail=f"HTTP {response.status_code}: {response.text[:200]}")

        body = response.json()
        if not body.get("ok"):
            return DeliveryResult(ok=False, detail=body.get("description", "telegram error"))

        message_id = (body.get("result") or {}).get("message_id")
        return DeliveryResult(ok=True, external_id=str(message_id) if message_id is not None else None)

    def parse_inbound(self, raw_event: dict) -> InboundResolution | InboundCommand:
        callback = raw_event.get("callback_query")
        if callback:
            data = callback.get("data") or ""
            chat_id = _chat_id((callback.get("message") or {}).get("chat"))

            match = self.CALLBACK_PATTERN.match(data)
            if match:
                return InboundResolution(action=match.group(1), token=match.group(2))
            match = self.HISTORY_PATTERN.match(data)
            if match:
                return InboundCommand(command="history", agent_id=match.group(1), chat_id=chat_id)
            match = self.ROLLBACK_PATTERN.match(data)
            if match:
                return self._rollback_command(match.group(1), match.group(2), chat_id)
            raise InboundParseError(self.channel, "callback_data is not a soul action")

        message = raw_event.get("message") or {}
        text = (message.get("text") or "").strip()
        if not text.startswith("/soul"):
            raise InboundParseError(self.channel, "not a /soul command")

        parts = text[len("/soul"):].split()
        if parts and parts[0].lower() == "history" and len(parts) == 2:
            return InboundCommand(command="history", agent_id=parts[1], chat_id=_chat_id(message.get("chat")))
        if parts and parts[0].lower() == "rollback" and len(parts) == 3:
            return self._rollback_command(parts[1], parts[2], _chat_id(message.get("chat")))
        return self._parse_text_command(text[len("/soul"):])

    def _rollback_command(self, agent_id: str, version: str, chat_id: str | None) -> InboundCommand:
        if not version.isdigit():
            raise InboundParseError(self.channel, f"invalid version number '{version}'")
        return InboundCommand(command="rollback", agent_id=agent_id, version=int(version), chat_id=chat_id)

    async def acknowledge(self, raw_event: dict, outcome) -> None:
        if not self._bot_token:
            return

        callback = raw_event.get("callback_query")
        if callback:
            url = self._method_url("answerCallbackQuery")
            payload = {"callback_query_id": callback.get("id"), "text": outcome.message}
        else:
            chat_id = ((raw_event.get("message") or {}).get("chat") or {}).get("id")
            if chat_id is None:
                return
            url = self._method_url("sendMessage")
            payload = {"chat_id": chat_id, "text": outcome.message}

        try:
            await self._post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("telegram_acknowledge_failed", error=str(e), proposal_id=outcome.proposal_id)

    async def acknowledge_command(self, raw_event: dict, outcome) -> None:
        """
        Answer the callback (if any) and post the command result to the chat.
        History gets one rollback button per older version.
        """
        if not self._bot_token:
            return

        callback = raw_event.get("callback_query")
        chat = (callback.get("message") or {}).get("chat") if callback else (raw_event.get("message") or {}).get("chat")
        chat_id = _chat_id(chat)

        requests = []
        if callback:
            short = "Loading history..." if outcome.command == "history" else outcome.message
            requests.append((self._method_url("answerCallbackQuery"), {
                "callback_query_id": callback.get("id"),
                "text": short,
            }))
        if chat_id is not None:
            message = {"chat_id": chat_id, "text": outcome.message}
            if outcome.rollback_versions:
                message["reply_markup"] = {"inline_keyboard": [
                    [{
                        "text": f"Rollback to v{version}",
                        "callback_data": f"soul_rollback_{outcome.agent_id}:{version}",
                    }]
                    for version in outcome.rollback_versions
                ]}
            requests.append((self._method_url("sendMessage"), message))

        for url, payload in requests:
            try:
                await self._post(url, json=payload)
            except httpx.HTTPError as e:
                logger.warning("telegram_acknowledge_failed", error=str(e), agent_id=outcome.agent_id, command=outcome.command)


def _chat_id(chat: dict | None) -> str | None:
    chat_id = (chat or {}).get("id")
    return str(chat_id) if chat_id is not None else None


# =============================================================================
# Webhook
# =============================================================================

class WebhookAdapter(ChannelAdapter):
    """
    Generic JSON webhook.

    Outbound: POST {address} {"event": "soul.proposal", "summary": {...}, "resolution_token": ...}
    Inbound: {"action": "approve", "token": "...", "edited_value": null}
        or {"text": "approve <token>"}
    """
    channel = "webhook"

    def render_summary(self, proposal, notes: list[str] | None = None) -> str:
        return json.dumps(build_summary(proposal, notes), ensure_ascii=False)

    async def send(self, address: str, rendered_summary: str, resolution_token: str) -> DeliveryResult:
        payload = {
            "event": "soul.proposal",
            "summary": json.loads(rendered_summary),
            "resolution_token": resolution_token,
        }
        try:
            response = await self._post(address, json=payload)
        except httpx.HTTPError as e:
            return DeliveryResult(ok=False, detail=f"{type(e).__name__}: {e}")

        if not response.is_success:
            return DeliveryResult(ok=False, detail=f"HTTP {response.status_code}")
        return DeliveryResult(ok=True, external_id=response.headers.get("x-request-id"))

    def parse_inbound(self, raw_event: dict) -> InboundResolution:
        if "text" in raw_event:
            return self._parse_text_command(raw_event["text"])

        action = (raw_event.get("action") or "").lower()
        token = raw_event.get("token") or raw_event.get("resolution_token")
        if action not in INBOUND_ACTIONS or not token:
            raise InboundParseError(self.channel, "expected 'action' and 'token'")
        edited_value = raw_event.get("edited_value")
        if action == "edit" and not edited_value:
            raise InboundParseError(self.channel, "edit requires 'edited_value'")
        return InboundResolution(
            action=action,
            token=token,
            edited_value=edited_value,
            proposal_id=raw_event.get("proposal_id"),
        )


# =============================================================================
# Email
# =============================================================================

class EmailAdapter(ChannelAdapter):
    """
    Transactional e-mail over an HTTP API (EMAIL_API_URL).

    Outbound: plain text + approve/reject links
        {PUBLIC_BASE_URL}/soul/resolve/{token}?action=approve
    Opening a link only shows a confirmation page (mail scanners fetch
    every link); the button on that page POSTs the decision.
    Inbound: {"token": ..., "action": ...}
    """
    channel = "email"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        public_base_url: str | None = None
    ):
        super().__init__(client)
        self._api_url = api_url if api_url is not None else config.EMAIL_API_URL
        self._api_key = api_key if api_key is not None else config.EMAIL_API_KEY
        self._sender = sender or config.EMAIL_SENDER
        self._public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")

    def resolution_link(self, token: str, action: str) -> str:
        return f"{self._public_base_url}/soul/resolve/{token}?action={action}"

    def render_summary(self, proposal, notes: list[str] | None = None) -> str:
        summary = build_summary(proposal, notes)
        lines = [
            f"Agent {summary['agent_id']} wants to update its personality.",
            "",
            f"{summary['action']} {summary['target_field']}:",
            f"  \"{summary['proposed_value']}\"",
        ]
        if summary["current_value"]:
            lines.append(f"Currently: \"{summary['current_value']}\"")
        lines += [
            "",
            f"Reason: {summary['reason']}",
            f"Operator risk: {summary['risk_level'].upper()}",
        ]
        for item in summary["review_checklist"]:
            lines.append(f"- {item}")
        for note in summary["notes"]:
            lines.append(f"Note: {note}")
        lines.append(f"Expires: {summary['expires_at']}")
        return "\n".join(lines)

    async def send(self, address: str, rendered_summary: str, resolution_token: str) -> DeliveryResult:
        if not self._api_url:
            return DeliveryResult(ok=False, detail="email api not configured")

        text = "\n".join([
            rendered_summary,
            "",
            f"Approve: {self.resolution_link(resolution_token, 'approve')}",
            f"Reject:  {self.resolution_link(resolution_token, 'reject')}",
        ])
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {
            "from": self._sender,
            "to": address,
            "subject": "Your agent wants to update its personality",
            "text": text,
        }
        try:
            response = await self._post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            return DeliveryResult(ok=False, detail=f"{type(e).__name__}: {e}")

        if not response.is_success:
            return DeliveryResult(ok=False, detail=f"HTTP {response.status_code}")
        body: Any = response.json() if response.content else {}
        return DeliveryResult(ok=True, external_id=body.get("id") if isinstance(body, dict) else None)

    def parse_inbound(self, raw_event: dict) -> InboundResolution:
        action = (raw_event.get("action") or "").lower()
        token = raw_event.get("token")
        if action not in ("approve", "reject") or not token:
            raise InboundParseError(self.channel, "link must carry token and approve/reject")
        return InboundResolution(action=action, token=token)


def render_confirmation_page(proposal, action: str, token: str) -> str:
    """HTML page behind an e-mail link: the proposal and one confirm button"""
    summary = build_summary(proposal)
    esc = html.escape
    rows = [
        f"<p><strong>{esc(summary['action'])} {esc(summary['target_field'])}</strong>: "
        f"&ldquo;{esc(summary['proposed_value'])}&rdquo;</p>",
    ]
    if summary["current_value"]:
        rows.append(f"<p>Currently: &ldquo;{esc(summary['current_value'])}&rdquo;</p>")
    rows += [
        f"<p>Reason: {esc(summary['reason'])}</p>",
        f"<p>Operator risk: {esc(summary['risk_level'].upper())}</p>",
    ]
    if summary["review_checklist"]:
        items = "".join(f"<li>{esc(item)}</li>" for item in summary["review_checklist"])
        rows.append(f"<ul>{items}</ul>")

    if proposal.status != "pending":
        footer = f"<p>This proposal is already {esc(proposal.status)}.</p>"
    else:
        target = f"/soul/resolve/{esc(token)}?action={esc(action)}"
        footer = (
            f'<form method="post" action="{target}">'
            f'<button type="submit">Confirm {esc(action)}</button></form>'
        )

    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{esc(summary['agent_id'])}: personality update</title></head><body>"
        f"<h1>Agent {esc(summary['agent_id'])} wants to update its personality</h1>"
        + "".join(rows)
        + footer
        + "</body></html>"
    )


def build_default_adapters(client: httpx.AsyncClient | None = None) -> dict[str, ChannelAdapter]:
    return {
        TelegramAdapter.channel: TelegramAdapter(client),
        WebhookAdapter.channel: WebhookAdapter(client),
        EmailAdapter.channel: EmailAdapter(client),
    }
