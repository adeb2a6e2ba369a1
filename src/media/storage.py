"""Object storage client for relayed media (Cloudinary upload API)."""

from __future__ import annotations

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"


class StorageError(Exception):
    """Upload to object storage failed."""


class ObjectStorage(ABC):
    """Stores a local file or remote URL and returns its public location."""

    @abstractmethod
    async def upload(
        self,
        source: Path | str,
        folder: str,
        resource_type: str = "auto",
        public_id: str | None = None,
    ) -> dict[str, Any]:
        """Upload and return the provider response; must include ``secure_url``."""


class CloudinaryStorage(ObjectStorage):
    """Signed uploads against the Cloudinary REST API."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._timeout = timeout
        self._clock = clock

    def sign(self, params: dict[str, str]) -> str:
        """Cloudinary signature: SHA-1 of sorted ``k=v`` pairs joined by ``&`` plus the secret."""
        to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k])
        return hashlib.sha1((to_sign + self._api_secret).encode()).hexdigest()

    async def upload(
        self,
        source: Path | str,
        folder: str,
        resource_type: str = "auto",
        public_id: str | None = None,
    ) -> dict[str, Any]:
        params = {"folder": folder, "timestamp": str(int(self._clock()))}
        if public_id:
            params["public_id"] = public_id
        form = {**params, "api_key": self._api_key, "signature": self.sign(params)}
        url = f"{_CLOUDINARY_API_BASE}/{self._cloud_name}/{resource_type}/upload"

        files = None
        if isinstance(source, Path):
            try:
                files = {"file": (source.name, source.read_bytes())}
            except OSError as exc:
                raise StorageError(f"Cannot read {source}: {exc}") from exc
        else:
            # Remote URLs and data URIs are fetched by the provider
            form["file"] = source

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, data=form, files=files, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise StorageError(f"Storage upload failed: {exc}") from exc

        try:
            result = resp.json()
        except ValueError:
            result = {}

        if resp.status_code >= 400:
            message = result.get("error", {}).get("message") if isinstance(result, dict) else None
            raise StorageError(
                f"Storage upload rejected ({resp.status_code}): {message or resp.text}",
            )
        if not isinstance(result, dict) or not result.get("secure_url"):
            raise StorageError("Storage response has no secure_url")

        logger.debug("Uploaded %s to %s", source if isinstance(source, Path) else "remote", result["secure_url"])
        return result
