"""Data models exchanged with the messaging session."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

VOICE_NOTE_TYPE = "ptt"


class SessionState(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    UNPAIRED = "UNPAIRED"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class InboundEvent:
    """A message received by the session, read-only to the relay."""

    sender_id: str
    recipient_id: str
    body: str = ""
    caption: str = ""
    has_media: bool = False
    media_type: str = "chat"  # chat, image, video, audio, ptt, document, sticker
    timestamp: int = 0
    from_me: bool = False
    message_id: str = ""
    media_id: str | None = None
    mimetype: str | None = None
    filename: str | None = None

    @property
    def is_voice_note(self) -> bool:
        return self.media_type == VOICE_NOTE_TYPE


@dataclass(frozen=True)
class DownloadedMedia:
    data: bytes
    mimetype: str
    filename: str | None = None


@dataclass(frozen=True)
class SendableMedia:
    """Media bytes ready for a session send."""

    data: bytes
    mimetype: str
    filename: str
