"""Webhook delivery engine.

One call to :meth:`DeliveryEngine.deliver` is one delivery session for a
single subscriber and a single event::

    ATTEMPTING -> SUCCESS
    ATTEMPTING -> RETRY_WAIT -> ATTEMPTING
    ATTEMPTING -> EXHAUSTED

Every attempt is signed, POSTed with the subscriber's timeout and written to
the audit log. The subscription's aggregate stats are incremented once, when
the session reaches a terminal state. Test sessions make a single attempt and
write nothing.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol
from uuid import UUID, uuid4

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout, StreamReader

from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    DeliveryResult,
    EventEnvelope,
    RetryPolicy,
    WebhookSubscription,
)
from webhook_service.otel import get_tracer
from webhook_service.services.signing import SignatureSigner, canonical_json
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
ATTEMPT_HEADER = "X-Webhook-Attempt"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"

SleepFn = Callable[[float], Awaitable[None]]


class AttemptLog(Protocol):
    async def append(self, attempt: DeliveryAttempt) -> None: ...


class StatsRecorder(Protocol):
    async def record_delivery_outcome(
        self, subscription_id: UUID, *, success: bool, delivered_at: datetime
    ) -> None: ...


def backoff_ms(
    attempt: int,
    policy: RetryPolicy,
    *,
    base_ms: int = 1000,
    cap_ms: int = 30000,
    linear_ms: int = 5000,
) -> int:
    """Delay inserted after failed *attempt* (1-based) before the next one."""
    if policy is RetryPolicy.EXPONENTIAL:
        return min(base_ms * 2 ** (attempt - 1), cap_ms)
    return linear_ms


def max_attempts(subscription: WebhookSubscription, *, is_test: bool = False) -> int:
    if is_test or subscription.retry_policy is RetryPolicy.NONE:
        return 1
    return subscription.max_retries


async def read_prefix(stream: StreamReader, limit: int) -> bytes:
    """Read at most *limit* bytes of a response body."""
    buf = bytearray()
    while len(buf) < limit:
        chunk = await stream.read(limit - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


@dataclass
class AttemptOutcome:
    status_code: int = 0
    response: str | None = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300


class DeliveryEngine:
    def __init__(
        self,
        session: ClientSession,
        attempt_log: AttemptLog,
        stats: StatsRecorder,
        *,
        sleep: SleepFn = asyncio.sleep,
        user_agent: str | None = None,
    ):
        self._session = session
        self._attempt_log = attempt_log
        self._stats = stats
        self._sleep = sleep
        self._user_agent = user_agent or settings.webhook_user_agent
        self._tracer = get_tracer(__name__)

    def backoff_ms(self, attempt: int, policy: RetryPolicy) -> int:
        return backoff_ms(
            attempt,
            policy,
            base_ms=settings.webhook_backoff_base_ms,
            cap_ms=settings.webhook_backoff_cap_ms,
            linear_ms=settings.webhook_linear_backoff_ms,
        )

    async def deliver(
        self,
        subscription: WebhookSubscription,
        event: str,
        envelope: EventEnvelope,
        *,
        is_test: bool = False,
    ) -> DeliveryResult:
        delivery_id = uuid4()
        payload = envelope.to_wire()
        body = canonical_json(payload)
        limit = max_attempts(subscription, is_test=is_test)
        log = logger.bind(
            subscription_id=str(subscription.id),
            webhook_event=event,
            delivery_id=str(delivery_id),
            test=is_test,
        )
        session_started = time.monotonic()

        attempt = 1
        while True:
            signature = SignatureSigner.sign(subscription.secret, payload)
            outcome = await self._attempt(subscription, event, body, signature, attempt, delivery_id)
            log.info(
                "webhook_attempt_finished",
                attempt=attempt,
                status_code=outcome.status_code,
                duration_ms=outcome.duration_ms,
                success=outcome.success,
                error=outcome.error,
            )
            if not is_test:
                await self._attempt_log.append(
                    DeliveryAttempt(
                        id=uuid4(),
                        subscription_id=subscription.id,
                        event=event,
                        payload=payload,
                        attempt=attempt,
                        status_code=outcome.status_code,
                        response=outcome.response,
                        duration_ms=outcome.duration_ms,
                        success=outcome.success,
                        error=outcome.error,
                        delivered_at=datetime.now(timezone.utc),
                    )
                )
            if outcome.success or attempt >= limit:
                break
            delay = self.backoff_ms(attempt, subscription.retry_policy)
            log.info("webhook_retry_scheduled", attempt=attempt, delay_ms=delay)
            await self._sleep(delay / 1000)
            attempt += 1

        if not is_test:
            await self._stats.record_delivery_outcome(
                subscription.id,
                success=outcome.success,
                delivered_at=datetime.now(timezone.utc),
            )

        result = DeliveryResult(
            delivery_id=delivery_id,
            subscription_id=subscription.id,
            event=event,
            success=outcome.success,
            status_code=outcome.status_code,
            duration_ms=int((time.monotonic() - session_started) * 1000),
            attempts=attempt,
            last_error=outcome.error,
            response=outcome.response,
        )
        if result.success:
            log.info("webhook_delivered", attempts=result.attempts, duration_ms=result.duration_ms)
        else:
            log.warning(
                "webhook_delivery_exhausted",
                attempts=result.attempts,
                duration_ms=result.duration_ms,
                last_error=result.last_error,
            )
        return result

    def build_headers(
        self,
        subscription: WebhookSubscription,
        event: str,
        signature: str,
        attempt: int,
        delivery_id: UUID,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: event,
            ATTEMPT_HEADER: str(attempt),
            DELIVERY_ID_HEADER: str(delivery_id),
            "User-Agent": self._user_agent,
        }
        for header in subscription.auth_headers:
            headers[header.name] = header.value
        return headers

    async def _attempt(
        self,
        subscription: WebhookSubscription,
        event: str,
        body: bytes,
        signature: str,
        attempt: int,
        delivery_id: UUID,
    ) -> AttemptOutcome:
        headers = self.build_headers(subscription, event, signature, attempt, delivery_id)
        request_kwargs: dict[str, Any] = {
            "data": body,
            "headers": headers,
            "timeout": ClientTimeout(total=subscription.timeout_seconds),
        }
        if not subscription.verify_ssl:
            # Operator opted out of certificate validation for this endpoint.
            request_kwargs["ssl"] = False

        outcome = AttemptOutcome()
        started = time.monotonic()
        with self._tracer.start_as_current_span(
            "webhook.attempt",
            attributes={
                "webhook.subscription_id": str(subscription.id),
                "webhook.event": event,
                "webhook.attempt": attempt,
            },
        ) as span:
            try:
                async with self._session.post(subscription.url, **request_kwargs) as resp:
                    outcome.status_code = resp.status
                    limit = settings.webhook_response_max_chars
                    # UTF-8 needs at most four bytes per character.
                    raw = await read_prefix(resp.content, limit * 4)
                    try:
                        text = raw.decode(resp.charset or "utf-8", errors="replace")
                    except LookupError:
                        text = raw.decode("utf-8", errors="replace")
                    outcome.response = text[:limit]
                    if not 200 <= resp.status < 300:
                        outcome.error = f"HTTP {resp.status}: {resp.reason or ''}".rstrip()
            except asyncio.TimeoutError:
                outcome.error = f"Timed out after {subscription.timeout_seconds}s"
            except ClientError as exc:
                outcome.error = str(exc) or type(exc).__name__
            except ValueError as exc:
                # Malformed headers or URL, rejected by aiohttp before sending.
                outcome.error = f"Invalid request: {exc}"
            span.set_attribute("http.status_code", outcome.status_code)

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        if outcome.error is not None:
            outcome.error = outcome.error[: settings.webhook_error_max_chars]
        return outcome
