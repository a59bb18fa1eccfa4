"""
Notification Delivery
=====================

Webhook adapter for notification intents, guarded by a circuit breaker.

Delivery is fire-and-forget: one attempt, failures are logged and never
raised back into the approval or escalation flow.
"""

import time
from typing import Optional

import httpx

from approvalflow.shared.domain.notifications import INotifier, NotificationIntent
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing endpoint for a while.

    States:
    - CLOSED: calls pass through
    - OPEN: after N consecutive failures, calls are skipped for M seconds
    - HALF_OPEN: after the timeout one call is let through to probe
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotifier(INotifier):
    """Posts notification intents as JSON to a single webhook."""

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def notify(self, intent: NotificationIntent) -> bool:
        if not self._webhook_url:
            logger.debug(
                "Notification webhook not configured, skipping",
                extra={"event_type": intent.event_type, "recipient": intent.recipient}
            )
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping notification",
                extra={"event_type": intent.event_type, "recipient": intent.recipient}
            )
            return False

        try:
            client = await self._get_client()
            response = await client.post(self._webhook_url, json=intent.to_dict())
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            logger.error(
                "Notification delivery failed",
                extra={"event_type": intent.event_type, "recipient": intent.recipient, "error": str(e)}
            )
            return False

        if response.is_success:
            self._circuit_breaker.record_success()
            logger.info(
                "Notification sent",
                extra={"event_type": intent.event_type, "recipient": intent.recipient}
            )
            return True

        self._circuit_breaker.record_failure()
        logger.warning(
            "Notification webhook returned non-2xx",
            extra={"event_type": intent.event_type, "status_code": response.status_code}
        )
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
