"""Messaging session capability consumed by the dispatchers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.session.models import DownloadedMedia, InboundEvent, SendableMedia, SessionState


class SessionError(Exception):
    """A session operation (download, send, state query) failed."""


class MessagingSession(ABC):
    """Process-wide chat session shared by every inbound and outbound dispatch.

    Implementations serialize their own network operations; callers only
    await the coroutine for the operation they need.
    """

    @property
    @abstractmethod
    def own_id(self) -> str:
        """Identity of this session; messages from it are never relayed."""

    @abstractmethod
    async def download_media(self, event: InboundEvent) -> DownloadedMedia:
        """Fetch the attachment bytes of an inbound event."""

    @abstractmethod
    async def send_text(self, to: str, text: str) -> None: ...

    @abstractmethod
    async def send_media(
        self, to: str, media: SendableMedia, caption: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def get_state(self) -> SessionState: ...
