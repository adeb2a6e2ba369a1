"""Service-account access tokens via the OAuth 2.0 JWT bearer grant.

Every call signs a fresh RS256 assertion and exchanges it at the identity
provider's token endpoint. Tokens are not cached: each inbound message is
relayed with a newly minted token.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from src.config import DEFAULT_TOKEN_SCOPE, DEFAULT_TOKEN_URI

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600


class TokenError(Exception):
    """The identity provider did not return an access token."""


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def sign_assertion(
    claims: dict[str, Any], private_key_pem: str, key_id: str | None = None,
) -> str:
    """Encode and RS256-sign ``claims`` as a compact JWT."""
    try:
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    except (ValueError, TypeError) as exc:
        raise TokenError(f"Invalid service account private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TokenError("Service account private key is not an RSA key")

    header: dict[str, str] = {"alg": "RS256", "typ": "JWT"}
    if key_id:
        header["kid"] = key_id
    head_b64 = _b64url(json.dumps(header, separators=(",", ":")).encode())
    body_b64 = _b64url(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{head_b64}.{body_b64}"
    signature = key.sign(signing_input.encode(), padding.PKCS1v15(), hashes.SHA256())
    return f"{signing_input}.{_b64url(signature)}"


class TokenProvider:
    """Mints short-lived bearer tokens for a service account."""

    def __init__(
        self,
        client_email: str,
        private_key: str,
        token_uri: str = DEFAULT_TOKEN_URI,
        scope: str = DEFAULT_TOKEN_SCOPE,
        private_key_id: str | None = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_email = client_email
        self._private_key = private_key
        self._token_uri = token_uri
        self._scope = scope
        self._private_key_id = private_key_id
        self._timeout = timeout
        self._clock = clock

    def build_claims(self, now: int) -> dict[str, Any]:
        return {
            "iss": self._client_email,
            "sub": self._client_email,
            "aud": self._token_uri,
            "iat": now,
            "exp": now + TOKEN_LIFETIME_SECONDS,
            "scope": self._scope,
        }

    async def get_access_token(self) -> str:
        """Exchange a freshly signed assertion for an access token.

        Raises TokenError when the endpoint is unreachable or its response
        has no ``access_token``; the message carries the provider's
        ``error_description`` or the raw body.
        """
        assertion = sign_assertion(
            self.build_claims(int(self._clock())),
            self._private_key,
            self._private_key_id,
        )
        form = {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(self._token_uri, data=form, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise TokenError(f"Token endpoint unreachable: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            logger.error("Failed to obtain access token: %s", data if data is not None else resp.text)
            description = data.get("error_description") if isinstance(data, dict) else None
            raise TokenError(
                f"Failed to obtain access token: {description or resp.text}",
            )
        return token
