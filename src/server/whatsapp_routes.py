"""WhatsApp Cloud API webhook endpoints feeding the inbound dispatcher."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

if TYPE_CHECKING:
    from src.relay.inbound import InboundDispatcher
    from src.session.whatsapp import WhatsAppCloudSession

logger = logging.getLogger(__name__)


def create_whatsapp_router(
    session: WhatsAppCloudSession,
    inbound: InboundDispatcher,
) -> APIRouter:
    router = APIRouter(prefix="/webhook")

    @router.get("/whatsapp")
    async def verify(request: Request) -> Response:
        """Meta subscription challenge."""
        result = session.handle_verification(dict(request.query_params))
        if result is None:
            return JSONResponse({"error": "Unsupported hub.mode"}, status_code=400)
        if result["status_code"] != 200:
            return JSONResponse({"error": result["error"]}, status_code=result["status_code"])
        return PlainTextResponse(result["content"])

    @router.post("/whatsapp")
    async def receive(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        """Acknowledge immediately; each message is relayed in its own background task."""
        body = await request.body()
        if not session.verify_signature(dict(request.headers), body):
            return JSONResponse({"error": "Invalid signature"}, status_code=403)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        events = session.extract_events(payload) if isinstance(payload, dict) else []
        for event in events:
            background_tasks.add_task(inbound.handle, event)
        logger.debug("Scheduled %d inbound events", len(events))
        return JSONResponse({"status": "ok", "events": len(events)})

    return router
