"""Webhook management service (registration, config updates, test sends, history)."""
from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Sequence
from uuid import UUID

import structlog
from pydantic import ValidationError

from webhook_service.core.exceptions import InvalidSubscriptionError
from webhook_service.domain.webhooks import (
    WEBHOOK_EVENTS,
    AuthHeader,
    DeliveryAttempt,
    DeliveryResult,
    DeliveryStatsSummary,
    EventEnvelope,
    EventTriggerStats,
    RetryPolicy,
    SubscriptionStatus,
    WebhookSubscription,
)
from webhook_service.repositories.webhooks import (
    DeliveryAttemptRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.dispatcher import Deliverer
from webhook_service.services.signing import generate_webhook_secret
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

_URL_RE = re.compile(r"^https?://.+", re.IGNORECASE)
_NAME_MAX_LENGTH = 100
_STATS_DEFAULT_WINDOW = timedelta(days=30)


def validate_name(name: str | None) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidSubscriptionError("name is required")
    if len(name) > _NAME_MAX_LENGTH:
        raise InvalidSubscriptionError(f"name cannot exceed {_NAME_MAX_LENGTH} characters")
    return name


def validate_url(url: str | None) -> str:
    url = (url or "").strip()
    if not url:
        raise InvalidSubscriptionError("url is required")
    if not _URL_RE.match(url):
        raise InvalidSubscriptionError("url must be a valid HTTP/HTTPS URL")
    return url


def normalize_events(events: Iterable[str] | None) -> list[str]:
    """Strip, de-duplicate (order kept) and check against the event catalog."""
    cleaned = [e.strip() for e in (events or []) if e and e.strip()]
    cleaned = list(dict.fromkeys(cleaned))
    if not cleaned:
        raise InvalidSubscriptionError("at least one event must be subscribed")
    unknown = [e for e in cleaned if e not in WEBHOOK_EVENTS]
    if unknown:
        raise InvalidSubscriptionError(f"unknown events: {', '.join(unknown)}")
    return cleaned


def parse_retry_policy(value: Any) -> RetryPolicy:
    try:
        return RetryPolicy(value)
    except ValueError as exc:
        raise InvalidSubscriptionError(f"unknown retry_policy: {value}") from exc


def normalize_auth_headers(headers: Iterable[AuthHeader | dict[str, Any]] | None) -> list[AuthHeader]:
    """Validate custom headers so a bad name or value never reaches delivery."""
    try:
        return [
            h if isinstance(h, AuthHeader) else AuthHeader.model_validate(h)
            for h in headers or ()
        ]
    except ValidationError as exc:
        errors = "; ".join(e["msg"] for e in exc.errors())
        raise InvalidSubscriptionError(f"invalid auth_headers: {errors}") from exc


def validate_limits(max_retries: int | None, timeout_seconds: float | None) -> None:
    if max_retries is not None and not 1 <= max_retries <= 10:
        raise InvalidSubscriptionError("max_retries must be between 1 and 10")
    if timeout_seconds is not None and not 0 < timeout_seconds <= 60:
        raise InvalidSubscriptionError("timeout_seconds must be in (0, 60]")


class WebhookService:
    def __init__(
        self,
        subscription_repository: WebhookSubscriptionRepository,
        attempt_repository: DeliveryAttemptRepository,
        engine: Deliverer,
    ):
        self._subscriptions = subscription_repository
        self._attempts = attempt_repository
        self._engine = engine

    async def register(
        self,
        *,
        owner_id: UUID,
        name: str,
        url: str,
        secret: str,
        events: Sequence[str],
        retry_policy: RetryPolicy = RetryPolicy.EXPONENTIAL,
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
        verify_ssl: bool = True,
        auth_headers: Sequence[AuthHeader | dict[str, Any]] = (),
    ) -> WebhookSubscription:
        """Validate and persist a subscription. Missing url/secret or no events is rejected."""
        if not secret:
            raise InvalidSubscriptionError("secret is required")
        max_retries = max_retries if max_retries is not None else settings.webhook_default_max_retries
        if timeout_seconds is None:
            timeout_seconds = settings.webhook_default_timeout_seconds
        validate_limits(max_retries, timeout_seconds)

        subscription = await self._subscriptions.create(
            owner_id=owner_id,
            name=validate_name(name),
            url=validate_url(url),
            secret=secret,
            events=normalize_events(events),
            retry_policy=parse_retry_policy(retry_policy),
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            verify_ssl=verify_ssl,
            auth_headers=normalize_auth_headers(auth_headers),
        )
        logger.info(
            "webhook_registered",
            subscription_id=str(subscription.id),
            owner_id=str(owner_id),
            events=subscription.events,
        )
        return subscription

    async def list_subscriptions(
        self, owner_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._subscriptions.list_by_owner(owner_id, limit=limit, offset=offset)

    async def get_subscription(self, owner_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        return await self._subscriptions.get(owner_id, subscription_id)

    async def update_subscription(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        changes: dict[str, Any],
        *,
        updated_by: UUID | None = None,
    ) -> WebhookSubscription:
        changes = dict(changes)
        if "name" in changes:
            changes["name"] = validate_name(changes["name"])
        if "url" in changes:
            changes["url"] = validate_url(changes["url"])
        if "events" in changes:
            changes["events"] = normalize_events(changes["events"])
        if "retry_policy" in changes:
            changes["retry_policy"] = parse_retry_policy(changes["retry_policy"])
        if "auth_headers" in changes:
            changes["auth_headers"] = normalize_auth_headers(changes["auth_headers"])
        validate_limits(changes.get("max_retries"), changes.get("timeout_seconds"))
        if "enabled" in changes:
            changes["status"] = (
                SubscriptionStatus.ACTIVE if changes["enabled"] else SubscriptionStatus.DISABLED
            )
        subscription = await self._subscriptions.update(
            owner_id, subscription_id, changes, updated_by=updated_by
        )
        logger.info(
            "webhook_updated",
            subscription_id=str(subscription_id),
            fields=sorted(changes),
        )
        return subscription

    async def set_enabled(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        enabled: bool,
        *,
        updated_by: UUID | None = None,
    ) -> WebhookSubscription:
        return await self.update_subscription(
            owner_id, subscription_id, {"enabled": enabled}, updated_by=updated_by
        )

    async def rotate_secret(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        *,
        updated_by: UUID | None = None,
    ) -> tuple[WebhookSubscription, str]:
        """Replace the signing secret. The old one stops verifying immediately."""
        secret = generate_webhook_secret()
        subscription = await self._subscriptions.set_secret(
            owner_id, subscription_id, secret, updated_by=updated_by
        )
        logger.info("webhook_secret_rotated", subscription_id=str(subscription_id))
        return subscription, secret

    async def delete_subscription(self, owner_id: UUID, subscription_id: UUID) -> None:
        await self._subscriptions.delete(owner_id, subscription_id)
        logger.info("webhook_deleted", subscription_id=str(subscription_id))

    async def send_test(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        *,
        event: str | None = None,
        data: Any = None,
        actor_id: UUID | None = None,
    ) -> DeliveryResult:
        """Single synchronous attempt; leaves stats and audit log untouched."""
        subscription = await self._subscriptions.get(owner_id, subscription_id)
        test_event = normalize_events([event])[0] if event else subscription.events[0]
        if data is None:
            data = {
                "id": f"test_{int(time.time() * 1000)}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "test": True,
            }
        envelope = EventEnvelope.build(test_event, data, actor_id)
        return await self._engine.deliver(subscription, test_event, envelope, is_test=True)

    async def recent_deliveries(
        self, owner_id: UUID, subscription_id: UUID, *, limit: int = 10
    ) -> List[DeliveryAttempt]:
        await self._subscriptions.get(owner_id, subscription_id)
        return await self._attempts.get_recent_deliveries(subscription_id, limit)

    async def delivery_stats(self, owner_id: UUID, subscription_id: UUID) -> DeliveryStatsSummary:
        await self._subscriptions.get(owner_id, subscription_id)
        return await self._attempts.stats_for_subscription(subscription_id)

    async def trigger_stats(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> List[EventTriggerStats]:
        end = end or datetime.now(timezone.utc)
        start = start or end - _STATS_DEFAULT_WINDOW
        return await self._attempts.trigger_stats(start, end)
