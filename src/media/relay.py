"""Media relay between the messaging session, object storage and remote URLs."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import tempfile
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import overload
from urllib.parse import urlparse

import httpx

from src.media.storage import ObjectStorage, StorageError
from src.models import UploadedMedia
from src.session.base import MessagingSession, SessionError
from src.session.models import InboundEvent, SendableMedia

logger = logging.getLogger(__name__)


class MediaError(Exception):
    """Inbound media could not be downloaded, staged or uploaded."""


class MediaFetchError(Exception):
    """An outbound media URL could not be fetched or its type is unknown."""


def extension_for(mimetype: str | None) -> str:
    """File extension from a MIME subtype, e.g. ``audio/ogg; codecs=opus`` -> ``ogg``."""
    if not mimetype or "/" not in mimetype:
        return "bin"
    subtype = mimetype.split("/", 1)[1].split(";", 1)[0].strip()
    return subtype or "bin"


@contextmanager
def staged_file(data: bytes, extension: str, directory: str | None = None) -> Iterator[Path]:
    """Write ``data`` to a uniquely named temp file, removed on every exit path."""
    path = Path(directory or tempfile.gettempdir()) / f"{uuid.uuid4()}.{extension}"
    try:
        path.write_bytes(data)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove temp file %s: %s", path, exc)


class MediaRelay:
    """Uploads inbound attachments and resolves outbound media URLs."""

    def __init__(
        self,
        session: MessagingSession,
        storage: ObjectStorage,
        inbox_folder: str = "wa-inbox-files",
        temp_dir: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._session = session
        self._storage = storage
        self._inbox_folder = inbox_folder
        self._temp_dir = temp_dir
        self._timeout = timeout

    async def upload_inbound_media(self, event: InboundEvent) -> UploadedMedia:
        try:
            media = await self._session.download_media(event)
        except SessionError as exc:
            raise MediaError(f"Media download failed: {exc}") from exc

        try:
            with staged_file(media.data, extension_for(media.mimetype), self._temp_dir) as path:
                result = await self._storage.upload(
                    path, folder=self._inbox_folder, resource_type="auto",
                )
        except OSError as exc:
            raise MediaError(f"Could not stage media: {exc}") from exc
        except StorageError as exc:
            raise MediaError(str(exc)) from exc

        return UploadedMedia(secure_url=result["secure_url"], mimetype=media.mimetype)

    @overload
    async def resolve_outbound_media(self, source: str) -> SendableMedia: ...

    @overload
    async def resolve_outbound_media(self, source: Sequence[str]) -> list[SendableMedia]: ...

    async def resolve_outbound_media(
        self, source: str | Sequence[str],
    ) -> SendableMedia | list[SendableMedia]:
        """Fetch one URL, or every URL of a list concurrently (result keeps input order).

        The first failing fetch cancels the rest of the batch.
        """
        if isinstance(source, str):
            return await self._fetch(source)
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(self._fetch(url)) for url in source]
        except ExceptionGroup as eg:
            failures = eg.subgroup(MediaFetchError)
            if failures is None:
                raise
            raise failures.exceptions[0] from None
        return [task.result() for task in tasks]

    async def _fetch(self, url: str) -> SendableMedia:
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                resp = await client.get(url, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise MediaFetchError(f"Failed to fetch {url}: {exc}") from exc

        if resp.status_code >= 400:
            raise MediaFetchError(f"Failed to fetch {url}: HTTP {resp.status_code}")

        path = urlparse(url).path
        # Any declared type is accepted, including ones WhatsApp does not list
        mimetype = resp.headers.get("content-type", "").split(";", 1)[0].strip()
        if not mimetype:
            mimetype = mimetypes.guess_type(path)[0] or ""
        if not mimetype:
            raise MediaFetchError(f"Unrecognized media type for {url}")

        filename = PurePosixPath(path).name or f"media.{extension_for(mimetype)}"
        return SendableMedia(data=resp.content, mimetype=mimetype, filename=filename)
