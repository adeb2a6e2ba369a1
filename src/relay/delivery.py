"""Two-step webhook delivery: test destination first, production as fallback.

Stages:
1. POST to the test webhook (skipped when no test URL is configured)
2. On a non-2xx answer or transport error, POST the same body to production once

Each stage yields a DeliveryAttempt; the pipeline guarantees at least one
destination accepted the payload or raises DeliveryError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from src.models import RelayPayload

logger = logging.getLogger(__name__)


class Destination(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


@dataclass(frozen=True)
class DeliveryAttempt:
    destination: Destination
    url: str
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300


@dataclass
class DeliveryResult:
    attempts: list[DeliveryAttempt] = field(default_factory=list)

    @property
    def delivered_to(self) -> Destination | None:
        for attempt in self.attempts:
            if attempt.ok:
                return attempt.destination
        return None


class DeliveryError(Exception):
    """Production webhook rejected or could not be reached after fallback."""

    def __init__(self, result: DeliveryResult) -> None:
        self.result = result
        last = result.attempts[-1]
        reason = last.error or f"HTTP {last.status_code}"
        super().__init__(f"Webhook delivery failed ({last.destination.value}: {reason})")


class WebhookDelivery:
    def __init__(
        self,
        prod_url: str,
        test_url: str | None = None,
        timeout: float = 30.0,
        session_name: str = "PMY",
    ) -> None:
        self._prod_url = prod_url
        self._test_url = test_url
        self._timeout = timeout
        self._session_name = session_name

    async def deliver(self, payload: RelayPayload) -> DeliveryResult:
        body = payload.to_wire()
        result = DeliveryResult()

        if self._test_url:
            test = await self._post(Destination.TEST, self._test_url, body)
            result.attempts.append(test)
            if test.ok:
                logger.info(
                    "[%s] Message forwarded to TEST webhook (%s)",
                    self._session_name, test.status_code,
                )
                return result
            logger.warning(
                "[%s] TEST webhook failed: %s",
                self._session_name, test.error or f"status {test.status_code}",
            )

        prod = await self._post(Destination.PRODUCTION, self._prod_url, body)
        result.attempts.append(prod)
        if not prod.ok:
            logger.error(
                "[%s] PROD webhook failed: %s",
                self._session_name, prod.error or f"status {prod.status_code}",
            )
            raise DeliveryError(result)

        logger.info(
            "[%s] Message forwarded to PROD webhook (%s)",
            self._session_name, prod.status_code,
        )
        return result

    async def _post(
        self, destination: Destination, url: str, body: dict[str, Any],
    ) -> DeliveryAttempt:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=body, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return DeliveryAttempt(destination, url, error=str(exc) or type(exc).__name__)
        return DeliveryAttempt(destination, url, status_code=resp.status_code)
