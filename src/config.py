"""Relay settings loaded from environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_TOKEN_SCOPE = "https://www.googleapis.com/auth/datastore"

_REQUIRED = (
    "WEBHOOK_PROD",
    "FIREBASE_CLIENT_EMAIL",
    "FIREBASE_PRIVATE_KEY",
    "CLOUDINARY_CLOUD_NAME",
    "CLOUDINARY_API_KEY",
    "CLOUDINARY_API_SECRET",
    "WHATSAPP_APP_SECRET",
    "WHATSAPP_VERIFY_TOKEN",
    "WHATSAPP_PHONE_NUMBER_ID",
    "WHATSAPP_ACCESS_TOKEN",
)


class ConfigError(Exception):
    """Raised when required environment variables are missing or invalid."""

    def __init__(self, missing: list[str], invalid: list[str] | None = None) -> None:
        self.missing = missing
        self.invalid = invalid or []
        problems = []
        if missing:
            problems.append(f"Missing required environment variables: {', '.join(missing)}")
        if self.invalid:
            problems.append(f"Invalid numeric environment variables: {', '.join(self.invalid)}")
        super().__init__("; ".join(problems))


def _number(
    environ: Mapping[str, str], name: str, default: str, cast: type, invalid: list[str],
) -> Any:
    raw = environ.get(name) or default
    try:
        return cast(raw)
    except ValueError:
        invalid.append(name)
        return cast(default)


class RelaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = 3000
    session_name: str = "PMY"
    reply_path: str = "/reply-pmy"

    webhook_test: str | None = None
    webhook_prod: str

    client_email: str
    private_key: str
    private_key_id: str | None = None
    project_id: str | None = None
    token_uri: str = DEFAULT_TOKEN_URI
    token_scope: str = DEFAULT_TOKEN_SCOPE

    cloudinary_cloud_name: str
    cloudinary_api_key: str
    cloudinary_api_secret: str
    inbox_folder: str = "wa-inbox-files"

    whatsapp_app_secret: str
    whatsapp_verify_token: str
    whatsapp_phone_number_id: str
    whatsapp_access_token: str
    whatsapp_own_number: str = ""

    http_timeout: float = 30.0
    state_check_interval: float = 0.0
    audit_log_path: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, dotenv: bool = True,
    ) -> RelaySettings:
        """Build settings from the process environment (and ``.env`` when present)."""
        if environ is None:
            if dotenv:
                load_dotenv(override=False)
            environ = os.environ

        missing = [name for name in _REQUIRED if not environ.get(name)]
        invalid: list[str] = []
        port = _number(environ, "PORT", "3000", int, invalid)
        http_timeout = _number(environ, "HTTP_TIMEOUT", "30", float, invalid)
        state_check_interval = _number(environ, "STATE_CHECK_INTERVAL", "0", float, invalid)
        if missing or invalid:
            raise ConfigError(missing, invalid)

        return cls(
            port=port,
            session_name=environ.get("SESSION_NAME", "PMY"),
            reply_path=environ.get("REPLY_PATH", "/reply-pmy"),
            webhook_test=environ.get("WEBHOOK_TEST") or None,
            webhook_prod=environ["WEBHOOK_PROD"],
            client_email=environ["FIREBASE_CLIENT_EMAIL"],
            # Keys pasted into env files carry literal "\n" sequences
            private_key=environ["FIREBASE_PRIVATE_KEY"].replace("\\n", "\n"),
            private_key_id=environ.get("FIREBASE_PRIVATE_KEY_ID") or None,
            project_id=environ.get("FIREBASE_PROJECT_ID") or None,
            token_uri=environ.get("TOKEN_URI", DEFAULT_TOKEN_URI),
            token_scope=environ.get("TOKEN_SCOPE", DEFAULT_TOKEN_SCOPE),
            cloudinary_cloud_name=environ["CLOUDINARY_CLOUD_NAME"],
            cloudinary_api_key=environ["CLOUDINARY_API_KEY"],
            cloudinary_api_secret=environ["CLOUDINARY_API_SECRET"],
            inbox_folder=environ.get("INBOX_FOLDER", "wa-inbox-files"),
            whatsapp_app_secret=environ["WHATSAPP_APP_SECRET"],
            whatsapp_verify_token=environ["WHATSAPP_VERIFY_TOKEN"],
            whatsapp_phone_number_id=environ["WHATSAPP_PHONE_NUMBER_ID"],
            whatsapp_access_token=environ["WHATSAPP_ACCESS_TOKEN"],
            whatsapp_own_number=environ.get("WHATSAPP_OWN_NUMBER", ""),
            http_timeout=http_timeout,
            state_check_interval=state_check_interval,
            audit_log_path=environ.get("AUDIT_LOG_PATH") or None,
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
