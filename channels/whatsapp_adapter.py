"""
WhatsApp Gateway — WhatsApp Business Cloud API client.

Provides:
- JID / phone normalization (5511...@s.whatsapp.net, @c.us, @lid)
- Webhook verification (hub.verify_token challenge)
- Outbound: text and media (image, video, audio, document) via httpx
- HTTP status → TransientGatewayError / PermanentGatewayError
- Inbound: Cloud API webhook payload → InboundEvent list
  (text, interactive replies, media with caption; groups, broadcasts and
  status updates ignored)
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional
from datetime import datetime, timezone

import httpx

from config.settings import GatewayConfig
from channels.base import (
    MessagingGateway, PermanentGatewayError, TransientGatewayError,
)
from models.schemas import DeliveryReceipt, InboundEvent, OutboundMessage

logger = structlog.get_logger()

_MEDIA_TYPES = ("image", "video", "audio", "document")


# ══════════════════════════════════════════════════════════════
#  JID / PHONE NORMALIZATION
# ══════════════════════════════════════════════════════════════

def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes and any JID suffix."""
    return re.sub(r"[^\d]", "", phone.split("@", 1)[0].split(":", 1)[0])


def is_individual_jid(jid: str) -> bool:
    """Groups (@g.us), broadcast lists and status updates are never automated."""
    lowered = jid.lower()
    if lowered.endswith("@g.us") or "@broadcast" in lowered or lowered.startswith("status@"):
        return False
    return bool(normalize_phone(jid))


def normalize_jid(jid_or_phone: str) -> str:
    """Canonical individual JID: '<digits>@s.whatsapp.net'."""
    return f"{normalize_phone(jid_or_phone)}@s.whatsapp.net"


def phone_from_jid(jid: str) -> str:
    return normalize_phone(jid)


def _message_id(body: Any) -> str:
    """wamid from a send response; '' when the body carries none."""
    messages = body.get("messages") if isinstance(body, dict) else None
    first = messages[0] if isinstance(messages, list) and messages else None
    return str(first.get("id", "")) if isinstance(first, dict) else ""


# ══════════════════════════════════════════════════════════════
#  WHATSAPP CLOUD GATEWAY
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudGateway(MessagingGateway):
    """
    WhatsApp Business Cloud API client.

    One instance serves every connection: credentials are looked up per
    connection_id from GatewayConfig.connections. Retries, rate limiting
    and the circuit breaker live in ResilientGateway, not here.
    """

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    def _credentials(self, connection_id: str) -> dict[str, str]:
        creds = self.config.connections.get(connection_id)
        if not creds or not creds.get("phone_number_id"):
            raise PermanentGatewayError(f"No credentials for connection {connection_id}", connection_id)
        return creds

    def _build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(message.to),
        }
        if message.media_type in _MEDIA_TYPES and message.media_url:
            media: dict[str, Any] = {"link": message.media_url}
            if message.content and message.media_type != "audio":
                media["caption"] = message.content
            payload["type"] = message.media_type
            payload[message.media_type] = media
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.content, "preview_url": True}
        return payload

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        creds = self._credentials(message.connection_id)
        url = f"{self.config.base_url}/{self.config.api_version}/{creds['phone_number_id']}/messages"
        headers = {"Authorization": f"Bearer {creds.get('access_token', '')}"}

        try:
            response = await self._client.post(url, json=self._build_payload(message), headers=headers)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"timeout: {e}", message.connection_id) from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"connection lost: {e}", message.connection_id) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientGatewayError(
                f"HTTP {response.status_code}: {self._error_text(response)}", message.connection_id,
            )
        if response.status_code >= 400:
            raise PermanentGatewayError(
                f"HTTP {response.status_code}: {self._error_text(response)}", message.connection_id,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PermanentGatewayError(
                f"HTTP {response.status_code}: unreadable response {response.text[:200]!r}", message.connection_id,
            ) from e
        msg_id = _message_id(body)
        logger.info("whatsapp_message_sent",
                    connection_id=message.connection_id,
                    to=normalize_phone(message.to), media_type=message.media_type, msg_id=msg_id)
        return DeliveryReceipt(message_id=msg_id, status="sent")

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:300]
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return response.text[:300]
        code = error.get("code", "")
        return f"{error.get('message', response.reason_phrase)} ({code})" if code else error.get("message", "")

    async def close(self) -> None:
        await self._client.aclose()

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
            return challenge
        return None

    # ── Inbound parsing ───────────────────────────────────────

    def connection_for_phone_number_id(self, phone_number_id: str) -> str:
        for connection_id, creds in self.config.connections.items():
            if creds.get("phone_number_id") == phone_number_id:
                return connection_id
        return ""

    def parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundEvent]:
        """Parse a WhatsApp Cloud API webhook payload into inbound events."""
        events: list[InboundEvent] = []
        for entry in raw_payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id", "")
                connection_id = self.connection_for_phone_number_id(phone_number_id)
                if not connection_id:
                    logger.warning("whatsapp_inbound_unknown_number", phone_number_id=phone_number_id)
                    continue

                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    event = self._parse_message(connection_id, msg, names)
                    if event:
                        events.append(event)
        return events

    def _parse_message(
        self, connection_id: str, msg: dict[str, Any], names: dict[str, str],
    ) -> Optional[InboundEvent]:
        sender = msg.get("from", "")
        if not sender or not is_individual_jid(sender):
            return None

        msg_type = msg.get("type", "text")
        text = ""
        media_type = ""
        media_url = ""

        if msg_type == "text":
            text = (msg.get("text") or {}).get("body", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {}) or {}
            text = reply.get("title", "")

        elif msg_type == "button":
            text = (msg.get("button") or {}).get("text", "")

        elif msg_type in _MEDIA_TYPES:
            media = msg.get(msg_type, {}) or {}
            text = media.get("caption", "")
            media_type = msg_type
            media_url = media.get("id", "")

        else:
            media_type = msg_type

        timestamp = datetime.now(timezone.utc)
        if msg.get("timestamp"):
            try:
                timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)
            except (TypeError, ValueError):
                pass

        return InboundEvent(
            connection_id=connection_id,
            remote_jid=normalize_jid(sender),
            text=text,
            media_type=media_type,
            media_url=media_url,
            contact_name=names.get(sender, ""),
            message_id=msg.get("id", ""),
            timestamp=timestamp,
        )
