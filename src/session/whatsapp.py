"""WhatsApp Business Cloud API session.

Inbound messages arrive through Meta's webhook (HMAC verification, the
subscription challenge and event extraction live here); media downloads,
sends and the connection probe go through the Graph API.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from src.session.base import MessagingSession, SessionError
from src.session.models import (
    VOICE_NOTE_TYPE,
    DownloadedMedia,
    InboundEvent,
    SendableMedia,
    SessionState,
)

logger = logging.getLogger(__name__)

_GRAPH_API_BASE = "https://graph.facebook.com"
_MEDIA_MESSAGE_TYPES = ("image", "video", "audio", "document", "sticker")
_CAPTIONED_KINDS = ("image", "video", "document")


def message_kind(mimetype: str) -> str:
    """Cloud API message type used to send media of ``mimetype``."""
    major = mimetype.split("/", 1)[0]
    if mimetype == "image/webp":
        return "sticker"
    if major in ("image", "video", "audio"):
        return major
    return "document"


def _json_object(resp: httpx.Response, what: str) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise SessionError(f"Malformed {what} response: {exc}") from exc
    if not isinstance(body, dict):
        raise SessionError(f"Malformed {what} response: expected an object")
    return body


class WhatsAppCloudSession(MessagingSession):
    """Messaging session backed by the WhatsApp Business Cloud API."""

    def __init__(
        self,
        app_secret: str,
        verify_token: str,
        phone_number_id: str,
        access_token: str,
        own_number: str = "",
        api_version: str = "v18.0",
        timeout: float = 30.0,
    ) -> None:
        self._app_secret = app_secret
        self._verify_token = verify_token
        self._phone_number_id = phone_number_id
        self._access_token = access_token
        self._own_number = own_number
        self._api_base = f"{_GRAPH_API_BASE}/{api_version}"
        self._timeout = timeout

    @property
    def own_id(self) -> str:
        return self._own_number

    # --- Webhook side ---

    def verify_signature(self, headers: dict[str, str], body: bytes) -> bool:
        """Check ``X-Hub-Signature-256`` against an HMAC-SHA256 of the raw body."""
        signature = headers.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            return False

        expected = hmac.new(
            self._app_secret.encode(), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(signature[7:], expected)

    def handle_verification(
        self, params: dict[str, str],
    ) -> dict[str, Any] | None:
        """Answer Meta's subscription challenge; None when mode is not subscribe."""
        if params.get("hub.mode") != "subscribe":
            return None

        token = params.get("hub.verify_token", "")
        if hmac.compare_digest(token, self._verify_token):
            return {"status_code": 200, "content": params.get("hub.challenge", "")}
        return {"status_code": 403, "error": "Invalid verify token"}

    def extract_events(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Turn a webhook payload into inbound events.

        Status callbacks (sent, delivered, read) and unsupported message
        types (reactions, locations, ...) produce no events.
        """
        events: list[InboundEvent] = []
        for entry in payload.get("entry", []):
            for change in entry.get("changes", []):
                value = change.get("value", {})
                own_number = value.get("metadata", {}).get("display_phone_number", "")
                for msg in value.get("messages", []):
                    event = self._to_event(msg, own_number or self._own_number)
                    if event is None:
                        logger.debug("Skipping unsupported message type %s", msg.get("type"))
                        continue
                    events.append(event)
        return events

    def _to_event(self, msg: dict[str, Any], own_number: str) -> InboundEvent | None:
        sender = msg.get("from", "")
        try:
            timestamp = int(msg.get("timestamp", "0"))
        except (TypeError, ValueError):
            logger.warning("Skipping message %s with bad timestamp %r", msg.get("id"), msg.get("timestamp"))
            return None
        common: dict[str, Any] = {
            "sender_id": sender,
            "recipient_id": own_number,
            "timestamp": timestamp,
            "from_me": bool(own_number) and sender == own_number,
            "message_id": msg.get("id", ""),
        }
        kind = msg.get("type")

        if kind == "text":
            return InboundEvent(body=msg.get("text", {}).get("body", ""), **common)
        if kind == "button":
            return InboundEvent(body=msg.get("button", {}).get("text", ""), **common)
        if kind == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            return InboundEvent(body=reply.get("title", ""), **common)
        if kind in _MEDIA_MESSAGE_TYPES:
            media = msg.get(kind, {})
            media_type = kind
            if kind == "audio" and media.get("voice"):
                media_type = VOICE_NOTE_TYPE
            return InboundEvent(
                caption=media.get("caption", ""),
                has_media=True,
                media_type=media_type,
                media_id=media.get("id"),
                mimetype=media.get("mime_type"),
                filename=media.get("filename"),
                **common,
            )
        return None

    # --- Graph API side ---

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def download_media(self, event: InboundEvent) -> DownloadedMedia:
        if not event.media_id:
            raise SessionError(f"Message {event.message_id or '?'} has no media id")

        try:
            async with httpx.AsyncClient(verify=True) as client:
                meta = await client.get(
                    f"{self._api_base}/{event.media_id}",
                    headers=self._headers(), timeout=self._timeout,
                )
                if meta.status_code >= 400:
                    raise SessionError(f"Media lookup failed ({meta.status_code}): {meta.text}")
                info = _json_object(meta, "media lookup")
                url = info.get("url")
                if not isinstance(url, str) or not url:
                    raise SessionError("Malformed media lookup response: no url")
                content = await client.get(url, headers=self._headers(), timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise SessionError(f"Media download failed: {exc}") from exc

        if content.status_code >= 400:
            raise SessionError(f"Media download failed ({content.status_code})")

        mimetype = info.get("mime_type") or event.mimetype or "application/octet-stream"
        return DownloadedMedia(data=content.content, mimetype=mimetype, filename=event.filename)

    async def send_text(self, to: str, text: str) -> None:
        await self._send_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": text},
        })

    async def send_media(
        self, to: str, media: SendableMedia, caption: str | None = None,
    ) -> None:
        media_id = await self._upload(media)
        kind = message_kind(media.mimetype)
        body: dict[str, Any] = {"id": media_id}
        if caption and kind in _CAPTIONED_KINDS:
            body["caption"] = caption
        if kind == "document":
            body["filename"] = media.filename
        await self._send_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": kind,
            kind: body,
        })

    async def get_state(self) -> SessionState:
        """Probe the phone number; a rejected token means the session is gone."""
        try:
            async with httpx.AsyncClient(verify=True) as client:
                resp = await client.get(
                    f"{self._api_base}/{self._phone_number_id}",
                    headers=self._headers(), timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise SessionError(f"State probe failed: {exc}") from exc

        if resp.status_code in (401, 403):
            return SessionState.UNPAIRED
        if resp.status_code >= 400:
            return SessionState.DISCONNECTED
        return SessionState.CONNECTED

    async def _upload(self, media: SendableMedia) -> str:
        url = f"{self._api_base}/{self._phone_number_id}/media"
        try:
            async with httpx.AsyncClient(verify=True) as client:
                resp = await client.post(
                    url,
                    data={"messaging_product": "whatsapp", "type": media.mimetype},
                    files={"file": (media.filename, media.data, media.mimetype)},
                    headers=self._headers(),
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise SessionError(f"Media upload failed: {exc}") from exc

        if resp.status_code >= 400:
            raise SessionError(f"Media upload failed ({resp.status_code}): {resp.text}")
        media_id = _json_object(resp, "media upload").get("id")
        if not isinstance(media_id, str) or not media_id:
            raise SessionError("Malformed media upload response: no id")
        return media_id

    async def _send_message(self, payload: dict[str, Any]) -> None:
        url = f"{self._api_base}/{self._phone_number_id}/messages"
        try:
            async with httpx.AsyncClient(verify=True) as client:
                resp = await client.post(
                    url, json=payload, headers=self._headers(), timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise SessionError(f"Send failed: {exc}") from exc

        if resp.status_code >= 400:
            raise SessionError(f"Send failed ({resp.status_code}): {resp.text}")
