"""Fail-fast supervision of the messaging session.

A lost session is never reconnected in-process: the supervisor terminates the
process with a dedicated exit code and leaves the restart to the external
process manager (systemd, PM2, a container runtime).
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING

from src.models import AuditEvent, AuditEventType
from src.session.base import MessagingSession, SessionError
from src.session.models import SessionState

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

SESSION_LOST_EXIT_CODE = 75  # EX_TEMPFAIL


class SessionSupervisor:
    def __init__(
        self,
        session: MessagingSession,
        session_name: str = "PMY",
        exit_hook: Callable[[int], object] = os._exit,
        check_interval: float = 0.0,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._session = session
        self._session_name = session_name
        self._exit = exit_hook
        self._check_interval = check_interval
        self._audit = audit_logger

    def on_disconnected(self, reason: str) -> None:
        logger.warning("[%s] Session disconnected: %s", self._session_name, reason)
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_DISCONNECTED,
                session=self._session_name,
                action="disconnect",
                result="failure",
                details={"reason": reason},
            ))
        self._exit(SESSION_LOST_EXIT_CODE)

    async def check_state(self) -> bool:
        """Return True when connected; anything else triggers the exit hook."""
        try:
            state = await self._session.get_state()
        except SessionError as exc:
            self.on_disconnected(f"state check failed: {exc}")
            return False

        logger.debug("[%s] Session state: %s", self._session_name, state.value)
        if state != SessionState.CONNECTED:
            self.on_disconnected(f"state is {state.value}")
            return False
        return True

    async def watch(self) -> None:
        """Poll the session state until it is lost. No-op when polling is disabled."""
        if self._check_interval <= 0:
            return
        while True:
            await asyncio.sleep(self._check_interval)
            if not await self.check_state():
                return
