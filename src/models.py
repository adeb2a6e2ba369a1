"""Shared Pydantic data models for the WhatsApp webhook relay."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class AuditEventType(str, Enum):
    INBOUND_IGNORED = "inbound_ignored"
    INBOUND_FAILED = "inbound_failed"
    WEBHOOK_DELIVERY = "webhook_delivery"
    REPLY_SENT = "reply_sent"
    REPLY_FAILED = "reply_failed"
    SESSION_DISCONNECTED = "session_disconnected"


# --- Relay Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RelayPayload(BaseModel):
    """Normalized inbound message as posted to the test/production webhooks."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sender: str = Field(alias="from")
    text: str
    access_token: str
    timestamp: str = Field(default_factory=_now_iso)
    image_url: str | None = Field(default=None, alias="imageUrl")
    mimetype: str | None = None
    is_voice_note: bool | None = Field(default=None, alias="isVoiceNote")

    def to_wire(self) -> dict[str, Any]:
        """JSON body with wire field names; absent media fields are omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ReplyRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    recipient: str = Field(alias="from", min_length=1)
    reply: str | None = None
    image_url: str | list[str] | None = Field(default=None, alias="imageUrl")
    caption: str | None = None


class UploadedMedia(BaseModel):
    model_config = ConfigDict(frozen=True)

    secure_url: str
    mimetype: str


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    session: str | None = None
    sender_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "skipped"
    details: dict[str, object] | None = None
