"""Outbound dispatch: reply requests to session sends."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from src.media.relay import MediaFetchError
from src.models import AuditEvent, AuditEventType, ReplyRequest
from src.session.base import SessionError

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.media.relay import MediaRelay
    from src.session.base import MessagingSession

logger = logging.getLogger(__name__)

REQUIRED_FIELDS_MESSAGE = "from and reply/imageUrl are required"


class ReplyValidationError(Exception):
    """Reply request body is malformed or lacks required fields."""


class ReplyDispatchError(Exception):
    """Media resolution or a session send failed while replying."""


# --- Media selection ---


@dataclass(frozen=True)
class NoMedia:
    pass


@dataclass(frozen=True)
class SingleMedia:
    url: str


@dataclass(frozen=True)
class ManyMedia:
    urls: tuple[str, ...]


MediaSelection = NoMedia | SingleMedia | ManyMedia


def select_media(image_url: str | list[str] | None) -> MediaSelection:
    """Collapse the ``imageUrl`` field; a one-element list is a single item."""
    if not image_url:
        return NoMedia()
    if isinstance(image_url, str):
        return SingleMedia(image_url)
    if len(image_url) == 1:
        return SingleMedia(image_url[0])
    return ManyMedia(tuple(image_url))


# --- Request parsing ---


def _loads(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ReplyValidationError(f"Invalid JSON payload: {exc.msg}") from exc


def parse_reply_request(body: Any) -> ReplyRequest:
    """Normalize a raw object, a JSON-encoded string, or a ``data`` wrapper."""
    payload = body
    if isinstance(payload, (str, bytes)):
        payload = _loads(payload)
    elif isinstance(payload, dict) and "data" in payload:
        data = payload["data"]
        if isinstance(data, str):
            payload = _loads(data)
        elif data:
            payload = data

    if not isinstance(payload, dict):
        raise ReplyValidationError("Reply payload must be a JSON object")
    if not payload.get("from") or not (payload.get("reply") or payload.get("imageUrl")):
        raise ReplyValidationError(REQUIRED_FIELDS_MESSAGE)

    try:
        return ReplyRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ReplyValidationError(f"Invalid {location}: {first['msg']}") from exc


class OutboundDispatcher:
    def __init__(
        self,
        session: MessagingSession,
        media_relay: MediaRelay,
        session_name: str = "PMY",
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._session = session
        self._media = media_relay
        self._session_name = session_name
        self._audit = audit_logger

    async def handle_reply(self, request: ReplyRequest) -> None:
        """Send the reply; raises ReplyDispatchError. Items already sent stay sent."""
        to = request.recipient
        selection = select_media(request.image_url)
        caption = request.caption or request.reply or ""

        try:
            if isinstance(selection, SingleMedia):
                media = await self._media.resolve_outbound_media(selection.url)
                await self._session.send_media(to, media, caption=caption)
            elif isinstance(selection, ManyMedia):
                items = await self._media.resolve_outbound_media(list(selection.urls))
                logger.info("[%s] Sending %d images to %s", self._session_name, len(items), to)
                for index, media in enumerate(items):
                    await self._session.send_media(
                        to, media, caption=caption if index == 0 else None,
                    )
            else:
                await self._session.send_text(to, request.reply or "")
        except (MediaFetchError, SessionError) as exc:
            logger.error("[%s] Reply to %s failed: %s", self._session_name, to, exc)
            self._log_audit(to, AuditEventType.REPLY_FAILED, "failure", {"error": str(exc)})
            raise ReplyDispatchError(str(exc)) from exc

        self._log_audit(to, AuditEventType.REPLY_SENT, "success", {"media": type(selection).__name__})

    def _log_audit(
        self, to: str, event_type: AuditEventType, result: str, details: dict[str, object],
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                session=self._session_name,
                sender_id=to,
                action="reply",
                result=result,
                details=details,
            ))
