"""Tests for service-account access token minting."""

from __future__ import annotations

import base64
import json
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from src.auth.token import (
    JWT_BEARER_GRANT,
    TokenError,
    TokenProvider,
    sign_assertion,
)
from tests.conftest import mock_async_client

TOKEN_URI = "https://oauth2.googleapis.com/token"


def _decode_segment(segment: str) -> dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def _make_provider(private_key: str, **kwargs: Any) -> TokenProvider:
    defaults: dict[str, Any] = {
        "client_email": "relay@project.iam.gserviceaccount.com",
        "private_key": private_key,
        "token_uri": TOKEN_URI,
        "clock": lambda: 1_700_000_000.5,
    }
    defaults.update(kwargs)
    return TokenProvider(**defaults)


class TestSignAssertion:
    def test_header_and_claims_round_trip(self, rsa_private_key_pem: str) -> None:
        jwt = sign_assertion({"iss": "me", "iat": 1}, rsa_private_key_pem, key_id="kid-1")
        head, body, _ = jwt.split(".")
        assert _decode_segment(head) == {"alg": "RS256", "typ": "JWT", "kid": "kid-1"}
        assert _decode_segment(body) == {"iss": "me", "iat": 1}

    def test_signature_verifies_with_public_key(self, rsa_private_key_pem: str) -> None:
        jwt = sign_assertion({"iss": "me"}, rsa_private_key_pem)
        head, body, sig = jwt.split(".")
        key = serialization.load_pem_private_key(rsa_private_key_pem.encode(), password=None)
        signature = base64.urlsafe_b64decode(sig + "=" * (-len(sig) % 4))
        # Raises InvalidSignature on mismatch
        key.public_key().verify(  # type: ignore[union-attr]
            signature, f"{head}.{body}".encode(), padding.PKCS1v15(), hashes.SHA256(),
        )

    def test_invalid_key_raises_token_error(self) -> None:
        with pytest.raises(TokenError):
            sign_assertion({"iss": "me"}, "not a pem key")


class TestClaims:
    def test_claims_are_time_bounded(self, rsa_private_key_pem: str) -> None:
        provider = _make_provider(rsa_private_key_pem, scope="https://scope.example")
        claims = provider.build_claims(1000)
        assert claims == {
            "iss": "relay@project.iam.gserviceaccount.com",
            "sub": "relay@project.iam.gserviceaccount.com",
            "aud": TOKEN_URI,
            "iat": 1000,
            "exp": 4600,
            "scope": "https://scope.example",
        }


class TestGetAccessToken:
    @pytest.mark.asyncio
    async def test_posts_jwt_bearer_grant(self, rsa_private_key_pem: str) -> None:
        provider = _make_provider(rsa_private_key_pem)
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"access_token": "ya29.token", "expires_in": 3599}

        with patch("src.auth.token.httpx.AsyncClient") as mock_client_cls:
            mock_client = mock_async_client(mock_client_cls)
            mock_client.post.return_value = resp

            token = await provider.get_access_token()

        assert token == "ya29.token"
        args, kwargs = mock_client.post.call_args
        assert args[0] == TOKEN_URI
        assert kwargs["data"]["grant_type"] == JWT_BEARER_GRANT
        claims = _decode_segment(kwargs["data"]["assertion"].split(".")[1])
        assert claims["iat"] == 1_700_000_000
        assert claims["exp"] == 1_700_003_600

    @pytest.mark.asyncio
    async def test_each_call_signs_a_fresh_assertion(self, rsa_private_key_pem: str) -> None:
        ticks = iter([1000.0, 1001.0])
        provider = _make_provider(rsa_private_key_pem, clock=lambda: next(ticks))
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"access_token": "t"}

        with patch("src.auth.token.httpx.AsyncClient") as mock_client_cls:
            mock_client = mock_async_client(mock_client_cls)
            mock_client.post.return_value = resp
            await provider.get_access_token()
            await provider.get_access_token()

        assertions = [c.kwargs["data"]["assertion"] for c in mock_client.post.call_args_list]
        assert len(assertions) == 2
        assert assertions[0] != assertions[1]
        issued = [_decode_segment(a.split(".")[1])["iat"] for a in assertions]
        assert issued == [1000, 1001]

    @pytest.mark.asyncio
    async def test_missing_token_uses_error_description(self, rsa_private_key_pem: str) -> None:
        provider = _make_provider(rsa_private_key_pem)
        resp = MagicMock(status_code=400, text='{"error":"invalid_grant"}')
        resp.json.return_value = {"error": "invalid_grant", "error_description": "Invalid JWT"}

        with patch("src.auth.token.httpx.AsyncClient") as mock_client_cls:
            mock_async_client(mock_client_cls).post.return_value = resp
            with pytest.raises(TokenError, match="Invalid JWT"):
                await provider.get_access_token()

    @pytest.mark.asyncio
    async def test_missing_token_falls_back_to_raw_body(self, rsa_private_key_pem: str) -> None:
        provider = _make_provider(rsa_private_key_pem)
        resp = MagicMock(status_code=502, text="Bad Gateway")
        resp.json.side_effect = ValueError("not json")

        with patch("src.auth.token.httpx.AsyncClient") as mock_client_cls:
            mock_async_client(mock_client_cls).post.return_value = resp
            with pytest.raises(TokenError, match="Bad Gateway"):
                await provider.get_access_token()

    @pytest.mark.asyncio
    async def test_transport_error_raises_token_error(self, rsa_private_key_pem: str) -> None:
        provider = _make_provider(rsa_private_key_pem)

        with patch("src.auth.token.httpx.AsyncClient") as mock_client_cls:
            mock_async_client(mock_client_cls).post.side_effect = httpx.ConnectError("refused")
            with pytest.raises(TokenError, match="unreachable"):
                await provider.get_access_token()
