"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge) and X-Hub-Signature-256
  payload signing checks
- Phone number normalization
- Inbound: text, voice notes, interactive replies (button_reply, list_reply);
  any other type is surfaced as UNSUPPORTED
- Outbound: text, reply buttons, lists, audio (uploaded as media first)
- Media download for voice notes, read receipts
"""
from __future__ import annotations

import hashlib
import hmac
import mimetypes
import re
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx

from channels.base import ChannelError, MessagingChannel
from config.settings import WhatsAppConfig, get_settings
from models.schemas import ButtonOption, InboundMessage, ListSection, MessageKind

logger = structlog.get_logger()

# Cloud API limits for interactive messages
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_HEADER = 60


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class WhatsAppAdapter(MessagingChannel):
    """WhatsApp Business Cloud API adapter."""

    channel_name = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None, transport: httpx.AsyncBaseTransport = None):
        super().__init__(rate_per_second=80, burst=100)
        self.config = config or get_settings().whatsapp
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_url.rstrip("/") + "/",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            logger.info("whatsapp_webhook_verified")
            return challenge
        logger.warning("whatsapp_webhook_verification_failed", mode=mode)
        return None

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """
        Check X-Hub-Signature-256 ("sha256=<hex>") against the app secret.
        Always passes when no app secret is configured.
        """
        if not self.config.app_secret:
            return True
        if not signature or not signature.startswith("sha256="):
            return False
        expected = hmac.new(
            self.config.app_secret.encode(), body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256="):])

    # ── Graph API calls ───────────────────────────────────────

    async def _api(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ChannelError(f"WhatsApp API unreachable: {e}", self.channel_name, retryable=True) from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise ChannelError(
                f"WhatsApp API {method} {path} returned {response.status_code}: {response.text[:200]}",
                self.channel_name,
                retryable=retryable,
            )
        return response

    async def _post_message(self, to: str, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self.normalize_phone(to),
            **payload,
        }

        async def call() -> dict[str, Any]:
            response = await self._api("POST", f"{self.config.phone_number_id}/messages", json=body)
            data = response.json()
            msg_id = (data.get("messages") or [{}])[0].get("id", "")
            logger.info("whatsapp_message_sent", to=body["to"], type=payload.get("type"), msg_id=msg_id)
            return {"status": "sent", "channel_message_id": msg_id}

        return await self._guarded(operation, call)

    # ── Send ──────────────────────────────────────────────────

    async def send_text(self, to: str, text: str) -> dict[str, Any]:
        return await self._post_message(to, "send_text", {
            "type": "text",
            "text": {"preview_url": False, "body": text},
        })

    async def send_buttons(
        self,
        to: str,
        body: str,
        buttons: list[ButtonOption],
        header: str = None,
        footer: str = None,
    ) -> dict[str, Any]:
        # the Cloud API accepts at most three reply buttons per message;
        # a longer set is split across consecutive messages
        chunks = [buttons[i:i + MAX_BUTTONS] for i in range(0, len(buttons), MAX_BUTTONS)] or [[]]
        result: dict[str, Any] = {}
        for index, chunk in enumerate(chunks):
            interactive: dict[str, Any] = {
                "type": "button",
                "body": {"text": body if index == 0 else "More options:"},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": b.id, "title": _clip(b.title, MAX_BUTTON_TITLE)}}
                        for b in chunk
                    ],
                },
            }
            if header and index == 0:
                interactive["header"] = {"type": "text", "text": _clip(header, MAX_HEADER)}
            if footer:
                interactive["footer"] = {"text": footer}
            result = await self._post_message(to, "send_buttons", {
                "type": "interactive",
                "interactive": interactive,
            })
        return result

    async def send_list(
        self,
        to: str,
        body: str,
        sections: list[ListSection],
        button_label: str,
        header: str = None,
        footer: str = None,
    ) -> dict[str, Any]:
        remaining = MAX_LIST_ROWS
        api_sections = []
        for section in sections:
            rows = section.rows[:remaining]
            remaining -= len(rows)
            if not rows:
                continue
            api_sections.append({
                "title": _clip(section.title, MAX_ROW_TITLE),
                "rows": [
                    {
                        "id": r.id,
                        "title": _clip(r.title, MAX_ROW_TITLE),
                        **({"description": _clip(r.description, MAX_ROW_DESCRIPTION)} if r.description else {}),
                    }
                    for r in rows
                ],
            })

        interactive: dict[str, Any] = {
            "type": "list",
            "body": {"text": body},
            "action": {"button": _clip(button_label, MAX_BUTTON_TITLE), "sections": api_sections},
        }
        if header:
            interactive["header"] = {"type": "text", "text": _clip(header, MAX_HEADER)}
        if footer:
            interactive["footer"] = {"text": footer}
        return await self._post_message(to, "send_list", {
            "type": "interactive",
            "interactive": interactive,
        })

    async def send_audio(self, to: str, audio_path: str) -> dict[str, Any]:
        media_id = await self.upload_media(audio_path)
        return await self._post_message(to, "send_audio", {
            "type": "audio",
            "audio": {"id": media_id},
        })

    # ── Media ─────────────────────────────────────────────────

    async def upload_media(self, file_path: str) -> str:
        path = Path(file_path)
        mime_type = mimetypes.guess_type(path.name)[0] or "audio/mpeg"

        async def call() -> dict[str, Any]:
            response = await self._api(
                "POST",
                f"{self.config.phone_number_id}/media",
                data={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (path.name, path.read_bytes(), mime_type)},
            )
            return response.json()

        result = await self._guarded("upload_media", call)
        media_id = result.get("id", "")
        if not media_id:
            raise ChannelError("Media upload returned no id", self.channel_name)
        logger.info("whatsapp_media_uploaded", media_id=media_id, mime_type=mime_type)
        return media_id

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Resolve the media URL, then fetch the bytes with the same token."""
        meta = (await self._api("GET", media_id)).json()
        url = meta.get("url")
        if not url:
            raise ChannelError(f"No download URL for media {media_id}", self.channel_name)
        response = await self._api("GET", url)
        mime_type = meta.get("mime_type") or response.headers.get("content-type", "")
        logger.info("whatsapp_media_downloaded", media_id=media_id, size=len(response.content))
        return response.content, mime_type

    async def mark_read(self, message_id: str) -> None:
        try:
            await self._api("POST", f"{self.config.phone_number_id}/messages", json={
                "messaging_product": "whatsapp",
                "status": "read",
                "message_id": message_id,
            })
        except ChannelError as e:
            logger.warning("whatsapp_mark_read_failed", message_id=message_id, error=str(e))

    # ── Inbound parsing ───────────────────────────────────────

    def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse WhatsApp Cloud API webhook payload."""
        messages: list[InboundMessage] = []
        for entry in raw_payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                # status updates (sent/delivered/read) carry no "messages"
                for msg in value.get("messages") or []:
                    parsed = self._parse_message(msg, names)
                    if parsed:
                        messages.append(parsed)
        return messages

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        sender = self.normalize_phone(msg.get("from", ""))
        if not sender:
            return None

        msg_type = msg.get("type", "text")
        try:
            timestamp = datetime.fromtimestamp(int(msg.get("timestamp", 0)), tz=timezone.utc)
        except (TypeError, ValueError):
            timestamp = datetime.now(timezone.utc)

        fields: dict[str, Any] = {
            "sender_key": sender,
            "message_id": msg.get("id", ""),
            "timestamp": timestamp,
            "sender_name": names.get(msg.get("from", ""), ""),
            "metadata": {"message_type": msg_type},
        }

        if msg_type == "text":
            fields["kind"] = MessageKind.TEXT
            fields["body"] = (msg.get("text") or {}).get("body", "")

        elif msg_type == "audio":
            audio = msg.get("audio") or {}
            fields["kind"] = MessageKind.AUDIO
            fields["media_id"] = audio.get("id", "")
            fields["mime_type"] = audio.get("mime_type", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            itype = interactive.get("type", "")
            reply = interactive.get(itype) or {}
            if itype not in ("button_reply", "list_reply") or not reply.get("id"):
                fields["kind"] = MessageKind.UNSUPPORTED
            else:
                fields["kind"] = MessageKind.INTERACTIVE
                fields["body"] = reply["id"]
                fields["metadata"]["title"] = reply.get("title", "")
                fields["metadata"]["interactive_type"] = itype

        elif msg_type == "button":
            # quick-reply buttons on template messages
            button = msg.get("button") or {}
            fields["kind"] = MessageKind.INTERACTIVE
            fields["body"] = button.get("payload") or button.get("text", "")

        else:
            fields["kind"] = MessageKind.UNSUPPORTED

        return InboundMessage(**fields)

    # ── Lifecycle ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
