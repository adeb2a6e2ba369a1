"""Inbound dispatch: session message to webhook payload.

Pipeline stages per event:
1. Ignore messages sent by this session
2. Mint an access token and build the base payload
3. Upload attached media (failure aborts the event)
4. Deliver test-then-production
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.auth.token import TokenError
from src.media.relay import MediaError
from src.models import AuditEvent, AuditEventType, RelayPayload
from src.relay.delivery import DeliveryError, DeliveryResult

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.auth.token import TokenProvider
    from src.media.relay import MediaRelay
    from src.relay.delivery import WebhookDelivery
    from src.session.base import MessagingSession
    from src.session.models import InboundEvent

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InboundDispatcher:
    def __init__(
        self,
        session: MessagingSession,
        token_provider: TokenProvider,
        media_relay: MediaRelay,
        delivery: WebhookDelivery,
        session_name: str = "PMY",
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session = session
        self._tokens = token_provider
        self._media = media_relay
        self._delivery = delivery
        self._session_name = session_name
        self._audit = audit_logger
        self._clock = clock

    def is_own_message(self, event: InboundEvent) -> bool:
        own_id = self._session.own_id
        return event.from_me or (bool(own_id) and event.sender_id == own_id)

    async def build_payload(self, event: InboundEvent) -> RelayPayload:
        """Base payload plus uploaded media; raises TokenError or MediaError."""
        payload = RelayPayload(
            sender=event.sender_id,
            text=event.caption or event.body or "",
            access_token=await self._tokens.get_access_token(),
            # Relay time, not the message's own timestamp
            timestamp=self._clock().isoformat(),
        )
        if not event.has_media:
            return payload

        uploaded = await self._media.upload_inbound_media(event)
        return payload.model_copy(update={
            "image_url": uploaded.secure_url,
            "mimetype": uploaded.mimetype,
            "is_voice_note": event.is_voice_note,
        })

    async def dispatch(self, event: InboundEvent) -> DeliveryResult | None:
        """Relay one event. Returns None for ignored events.

        Raises TokenError, MediaError (no webhook called) or DeliveryError.
        """
        logger.info(
            '[%s] Message from %s to %s: "%s" at %s',
            self._session_name, event.sender_id, event.recipient_id, event.body,
            datetime.fromtimestamp(event.timestamp, UTC).isoformat(),
        )
        if self.is_own_message(event):
            self._log_audit(event, AuditEventType.INBOUND_IGNORED, "ignore", "skipped")
            return None

        payload = await self.build_payload(event)
        result = await self._delivery.deliver(payload)
        delivered_to = result.delivered_to
        self._log_audit(
            event, AuditEventType.WEBHOOK_DELIVERY, "deliver", "success",
            {
                "destination": delivered_to.value if delivered_to else None,
                "attempts": len(result.attempts),
                "has_media": event.has_media,
            },
        )
        return result

    async def handle(self, event: InboundEvent) -> None:
        """Fire-and-forget entry point used by the transport; never raises relay errors."""
        try:
            await self.dispatch(event)
        except (TokenError, MediaError, DeliveryError) as exc:
            logger.error("[%s] Failed to process inbound message: %s", self._session_name, exc)
            self._log_audit(
                event, AuditEventType.INBOUND_FAILED, "dispatch", "failure",
                {"error": str(exc), "stage": type(exc).__name__},
            )

    def _log_audit(
        self,
        event: InboundEvent,
        event_type: AuditEventType,
        action: str,
        result: str,
        details: dict[str, object] | None = None,
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                session=self._session_name,
                sender_id=event.sender_id,
                action=action,
                result=result,
                details=details,
            ))
