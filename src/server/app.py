"""FastAPI application: health check, reply endpoint and session webhook."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.audit.logger import AuditLogger
from src.auth.token import TokenProvider
from src.config import RelaySettings, configure_logging
from src.media.relay import MediaRelay
from src.media.storage import CloudinaryStorage, ObjectStorage
from src.relay.delivery import WebhookDelivery
from src.relay.inbound import InboundDispatcher
from src.relay.outbound import (
    OutboundDispatcher,
    ReplyDispatchError,
    ReplyValidationError,
    parse_reply_request,
)
from src.server.whatsapp_routes import create_whatsapp_router
from src.session.base import MessagingSession
from src.session.supervisor import SessionSupervisor
from src.session.whatsapp import WhatsAppCloudSession

logger = logging.getLogger(__name__)

HEALTH_TEXT = "WhatsApp bot is active!"


@dataclass
class RelayComponents:
    inbound: InboundDispatcher
    outbound: OutboundDispatcher
    supervisor: SessionSupervisor


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = RelaySettings.from_env()
    configure_logging(settings.log_level)
    audit_logger = (
        AuditLogger.from_env(settings.audit_log_path) if settings.audit_log_path else None
    )
    return create_app(settings, build_session(settings), audit_logger=audit_logger)


def build_session(settings: RelaySettings) -> WhatsAppCloudSession:
    return WhatsAppCloudSession(
        app_secret=settings.whatsapp_app_secret,
        verify_token=settings.whatsapp_verify_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        access_token=settings.whatsapp_access_token,
        own_number=settings.whatsapp_own_number,
        timeout=settings.http_timeout,
    )


def build_components(
    settings: RelaySettings,
    session: MessagingSession,
    audit_logger: AuditLogger | None = None,
    storage: ObjectStorage | None = None,
    token_provider: TokenProvider | None = None,
) -> RelayComponents:
    """Wire both dispatchers around the one shared session."""
    storage = storage or CloudinaryStorage(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
    )
    token_provider = token_provider or TokenProvider(
        client_email=settings.client_email,
        private_key=settings.private_key,
        token_uri=settings.token_uri,
        scope=settings.token_scope,
        private_key_id=settings.private_key_id,
        timeout=settings.http_timeout,
    )
    media_relay = MediaRelay(
        session, storage,
        inbox_folder=settings.inbox_folder,
        timeout=settings.http_timeout,
    )
    delivery = WebhookDelivery(
        prod_url=settings.webhook_prod,
        test_url=settings.webhook_test,
        timeout=settings.http_timeout,
        session_name=settings.session_name,
    )
    return RelayComponents(
        inbound=InboundDispatcher(
            session, token_provider, media_relay, delivery,
            session_name=settings.session_name,
            audit_logger=audit_logger,
        ),
        outbound=OutboundDispatcher(
            session, media_relay,
            session_name=settings.session_name,
            audit_logger=audit_logger,
        ),
        supervisor=SessionSupervisor(
            session,
            session_name=settings.session_name,
            check_interval=settings.state_check_interval,
            audit_logger=audit_logger,
        ),
    )


def create_app(
    settings: RelaySettings,
    session: MessagingSession,
    audit_logger: AuditLogger | None = None,
    components: RelayComponents | None = None,
) -> FastAPI:
    """Create the relay app around an already-constructed session."""
    components = components or build_components(settings, session, audit_logger)
    session_name = settings.session_name

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        watchdog = asyncio.create_task(components.supervisor.watch())
        logger.info("Server running on port %s", settings.port)
        try:
            yield
        finally:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.components = components

    @app.get("/")
    async def health() -> PlainTextResponse:
        return PlainTextResponse(HEALTH_TEXT)

    @app.post(settings.reply_path)
    async def reply(request: Request) -> JSONResponse:
        raw = await request.body()
        logger.info("[%s] Reply payload: %s", session_name, raw.decode(errors="replace"))
        try:
            reply_request = parse_reply_request(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        except ReplyValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            await components.outbound.handle_reply(reply_request)
        except ReplyDispatchError as e:
            return JSONResponse(
                {"error": "Failed to send reply", "detail": str(e)},
                status_code=500,
            )
        return JSONResponse({"success": True})

    if isinstance(session, WhatsAppCloudSession):
        app.include_router(create_whatsapp_router(session, components.inbound))

    return app
