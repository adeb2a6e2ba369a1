"""Click CLI for running and operating the relay."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click
import uvicorn

from src.audit.logger import validate_audit_chain
from src.auth.token import TokenError, TokenProvider
from src.config import ConfigError, RelaySettings, configure_logging
from src.relay.outbound import ReplyDispatchError, ReplyValidationError, parse_reply_request
from src.server.app import build_components, build_session


def _load_settings() -> RelaySettings:
    try:
        return RelaySettings.from_env()
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


@click.group()
def cli() -> None:
    """WhatsApp webhook relay."""


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")
@click.option("--port", type=int, default=None, help="Port (defaults to $PORT or 3000).")
def serve(host: str, port: int | None) -> None:
    """Run the HTTP server."""
    settings = _load_settings()
    uvicorn.run(
        "src.server.app:create_app_from_env",
        factory=True,
        host=host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
def token() -> None:
    """Mint one access token and print it."""
    settings = _load_settings()
    provider = TokenProvider(
        client_email=settings.client_email,
        private_key=settings.private_key,
        token_uri=settings.token_uri,
        scope=settings.token_scope,
        private_key_id=settings.private_key_id,
        timeout=settings.http_timeout,
    )
    try:
        click.echo(asyncio.run(provider.get_access_token()))
    except TokenError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.argument("recipient")
@click.option("--text", "reply_text", default=None, help="Reply text (caption when media is sent).")
@click.option("--image-url", "image_urls", multiple=True, help="Media URL; repeat for several.")
@click.option("--caption", default=None, help="Caption for the first media item.")
def reply(
    recipient: str, reply_text: str | None, image_urls: tuple[str, ...], caption: str | None,
) -> None:
    """Send a reply through the configured session."""
    body: dict[str, object] = {"from": recipient}
    if reply_text:
        body["reply"] = reply_text
    if image_urls:
        body["imageUrl"] = list(image_urls)
    if caption:
        body["caption"] = caption

    try:
        request = parse_reply_request(body)
    except ReplyValidationError as e:
        raise click.UsageError(str(e)) from e

    settings = _load_settings()
    configure_logging(settings.log_level)
    components = build_components(settings, build_session(settings))
    try:
        asyncio.run(components.outbound.handle_reply(request))
    except ReplyDispatchError as e:
        raise click.ClickException(f"Failed to send reply: {e}") from e
    click.echo(json.dumps({"success": True}))


@cli.command("audit-verify")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def audit_verify(log_path: Path) -> None:
    """Validate the hash chain of an audit log."""
    result = validate_audit_chain(log_path)
    if not result.valid:
        raise click.ClickException(f"Audit chain broken at line {result.broken_at_line}")
    click.echo(f"Audit chain valid ({result.entries} entries)")
