"""Webhook repositories (subscription registry + delivery audit log)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Sequence, Tuple
from uuid import UUID, uuid4

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.webhooks import (
    AuthHeader,
    DeliveryAttempt,
    DeliveryStatsSummary,
    EventTriggerStats,
    RetryPolicy,
    SubscriptionStatus,
    WebhookSubscription,
)
from webhook_service.repositories.base import BaseRepository

# Columns an administrative update may touch. Stats columns are written only
# by ``record_delivery_outcome``.
_UPDATABLE_COLUMNS = (
    "name",
    "url",
    "events",
    "enabled",
    "status",
    "retry_policy",
    "max_retries",
    "timeout_seconds",
    "verify_ssl",
    "auth_headers",
)


def _auth_headers_json(headers: Sequence[AuthHeader]) -> str:
    return json.dumps([h.model_dump() for h in headers])


class WebhookSubscriptionRepository(BaseRepository):
    """Registry of subscriber configuration, indexed by event name (GIN on ``events``)."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        payload = dict(record)
        payload.pop("total_count", None)
        headers = payload.get("auth_headers")
        if isinstance(headers, str):
            payload["auth_headers"] = json.loads(headers)
        payload["delivery_stats"] = {
            "total": payload.pop("delivery_total", 0),
            "successful": payload.pop("delivery_successful", 0),
            "failed": payload.pop("delivery_failed", 0),
        }
        return WebhookSubscription.model_validate(payload)

    async def create(
        self,
        *,
        owner_id: UUID,
        name: str,
        url: str,
        secret: str,
        events: list[str],
        retry_policy: RetryPolicy,
        max_retries: int,
        timeout_seconds: float,
        verify_ssl: bool,
        auth_headers: Sequence[AuthHeader],
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_subscriptions (
                id, owner_id, name, url, secret, events, enabled, status,
                retry_policy, max_retries, timeout_seconds, verify_ssl, auth_headers
            )
            VALUES ($1, $2, $3, $4, $5, $6::text[], true, 'active', $7, $8, $9, $10, $11::jsonb)
            RETURNING *
            """,
            uuid4(),
            owner_id,
            name,
            url,
            secret,
            events,
            retry_policy.value,
            max_retries,
            timeout_seconds,
            verify_ssl,
            _auth_headers_json(auth_headers),
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, owner_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE owner_id = $1 AND id = $2",
            owner_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def list_by_owner(
        self, owner_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_subscriptions
            WHERE owner_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            owner_id,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total = 0
        for rec in records:
            total = int(rec["total_count"])
            items.append(self._to_model(rec))
        return items, total

    async def update(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        changes: dict[str, Any],
        *,
        updated_by: UUID | None = None,
    ) -> WebhookSubscription:
        """Apply a partial config update. Unknown keys are rejected."""
        unknown = set(changes) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not changes:
            return await self.get(owner_id, subscription_id)

        assignments: list[str] = []
        values: list[Any] = [owner_id, subscription_id, updated_by]
        idx = 4
        for column in _UPDATABLE_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            cast = ""
            if column == "auth_headers":
                value = _auth_headers_json(value)
                cast = "::jsonb"
            elif column == "events":
                cast = "::text[]"
            elif isinstance(value, (RetryPolicy, SubscriptionStatus)):
                value = value.value
            assignments.append(f"{column} = ${idx}{cast}")
            values.append(value)
            idx += 1

        record = await self._fetchrow(
            f"""
            UPDATE webhook_subscriptions
            SET {", ".join(assignments)},
                updated_by = $3,
                updated_at = now()
            WHERE owner_id = $1 AND id = $2
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def set_secret(
        self,
        owner_id: UUID,
        subscription_id: UUID,
        secret: str,
        *,
        updated_by: UUID | None = None,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            UPDATE webhook_subscriptions
            SET secret = $3, updated_by = $4, updated_at = now()
            WHERE owner_id = $1 AND id = $2
            RETURNING *
            """,
            owner_id,
            subscription_id,
            secret,
            updated_by,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def delete(self, owner_id: UUID, subscription_id: UUID) -> None:
        record = await self._fetchrow(
            """
            DELETE FROM webhook_subscriptions
            WHERE owner_id = $1 AND id = $2
            RETURNING id
            """,
            owner_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")

    async def lookup_subscribers(self, event: str) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE events @> ARRAY[$1]::text[]
              AND enabled = true
              AND status = 'active'
            ORDER BY created_at ASC
            """,
            event,
        )
        return [self._to_model(r) for r in records]

    async def record_delivery_outcome(
        self, subscription_id: UUID, *, success: bool, delivered_at: datetime
    ) -> None:
        """Count one finished delivery session with in-place increments."""
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET delivery_total = delivery_total + 1,
                delivery_successful = delivery_successful + CASE WHEN $2 THEN 1 ELSE 0 END,
                delivery_failed = delivery_failed + CASE WHEN $2 THEN 0 ELSE 1 END,
                last_delivery_at = $3
            WHERE id = $1
            """,
            subscription_id,
            success,
            delivered_at,
        )


class DeliveryAttemptRepository(BaseRepository):
    """Append-only audit log of delivery attempts."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryAttempt:
        payload = dict(record)
        value = payload.get("payload")
        if isinstance(value, str):
            payload["payload"] = json.loads(value)
        return DeliveryAttempt.model_validate(payload)

    async def append(self, attempt: DeliveryAttempt) -> None:
        await self._execute(
            """
            INSERT INTO webhook_delivery_attempts (
                id, subscription_id, event, payload, attempt, status_code,
                response, duration_ms, success, error, delivered_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11)
            """,
            attempt.id,
            attempt.subscription_id,
            attempt.event,
            json.dumps(attempt.payload),
            attempt.attempt,
            attempt.status_code,
            attempt.response,
            attempt.duration_ms,
            attempt.success,
            attempt.error,
            attempt.delivered_at,
        )

    async def get_recent_deliveries(
        self, subscription_id: UUID, limit: int = 10
    ) -> List[DeliveryAttempt]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_delivery_attempts
            WHERE subscription_id = $1
            ORDER BY delivered_at DESC, attempt DESC
            LIMIT $2
            """,
            subscription_id,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def stats_for_subscription(self, subscription_id: UUID) -> DeliveryStatsSummary:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE success) AS successful,
                   COUNT(*) FILTER (WHERE NOT success) AS failed,
                   COALESCE(AVG(duration_ms), 0) AS avg_duration_ms
            FROM webhook_delivery_attempts
            WHERE subscription_id = $1
            """,
            subscription_id,
        )
        if record is None:
            return DeliveryStatsSummary()
        return DeliveryStatsSummary(
            total=int(record["total"]),
            successful=int(record["successful"]),
            failed=int(record["failed"]),
            avg_duration_ms=float(record["avg_duration_ms"]),
        )

    async def trigger_stats(self, start: datetime, end: datetime) -> List[EventTriggerStats]:
        records = await self._fetch(
            """
            SELECT event,
                   COUNT(*) AS count,
                   COUNT(*) FILTER (WHERE success) AS successful,
                   COUNT(*) FILTER (WHERE NOT success) AS failed,
                   AVG(duration_ms) AS avg_duration_ms
            FROM webhook_delivery_attempts
            WHERE delivered_at >= $1 AND delivered_at <= $2
            GROUP BY event
            ORDER BY count DESC
            """,
            start,
            end,
        )
        return [
            EventTriggerStats(
                event=r["event"],
                count=int(r["count"]),
                successful=int(r["successful"]),
                failed=int(r["failed"]),
                avg_duration_ms=float(r["avg_duration_ms"] or 0),
            )
            for r in records
        ]

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Purge attempts delivered before *cutoff*. Returns count."""
        status = await self._execute(
            "DELETE FROM webhook_delivery_attempts WHERE delivered_at < $1",
            cutoff,
        )
        return self._affected(status)
