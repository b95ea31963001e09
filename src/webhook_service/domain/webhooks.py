"""Webhook domain primitives."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Every event name a subscription may listen to (``entity.verb``).
WEBHOOK_EVENTS: tuple[str, ...] = (
    "payment.created",
    "payment.updated",
    "payment.completed",
    "payment.failed",
    "payment.refunded",
    "subscription.created",
    "subscription.updated",
    "subscription.cancelled",
    "subscription.expired",
    "subscription.renewed",
    "invoice.created",
    "invoice.paid",
    "invoice.failed",
    "contract.signed",
    "contract.expired",
    "contract.renewed",
    "contract.updated",
    "user.created",
    "user.updated",
    "user.deleted",
    "transaction.created",
    "transaction.completed",
)


class RetryPolicy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


def mask_value(value: str, visible: int = 4) -> str:
    return "*" * 8 + value[-visible:]


_HEADER_NAME_PATTERN = r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$"
_HEADER_VALUE_FORBIDDEN = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


class AuthHeader(BaseModel):
    """Custom header sent with every delivery (name is an RFC 9110 token)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=256, pattern=_HEADER_NAME_PATTERN)
    value: str = Field(max_length=8192)

    @field_validator("value")
    @classmethod
    def _no_control_characters(cls, value: str) -> str:
        if _HEADER_VALUE_FORBIDDEN.search(value):
            raise ValueError("header value must not contain control characters")
        return value


class DeliveryStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class WebhookSubscription(BaseModel):
    id: UUID
    owner_id: UUID
    name: str
    url: str
    secret: str = Field(repr=False)
    events: list[str] = Field(default_factory=list)
    enabled: bool = True
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    retry_policy: RetryPolicy = RetryPolicy.EXPONENTIAL
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=30.0, gt=0, le=60)
    verify_ssl: bool = True
    auth_headers: list[AuthHeader] = Field(default_factory=list, repr=False)
    delivery_stats: DeliveryStats = Field(default_factory=DeliveryStats)
    last_delivery_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    updated_by: UUID | None = None

    @property
    def is_deliverable(self) -> bool:
        return self.enabled and self.status is SubscriptionStatus.ACTIVE

    def subscribes_to(self, event: str) -> bool:
        return event in self.events

    def sanitized(self) -> dict[str, Any]:
        """JSON view for reads: no secret, auth header values masked."""
        payload = self.model_dump(mode="json", exclude={"secret", "auth_headers"})
        payload["auth_headers"] = [
            {"name": h.name, "value": mask_value(h.value)} for h in self.auth_headers
        ]
        return payload


class EventEnvelope(BaseModel):
    """Normalized body POSTed to subscribers: ``{event, timestamp, data, triggeredBy}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event: str
    timestamp: datetime
    data: Any = None
    triggered_by: str | None = Field(default=None, alias="triggeredBy")

    @classmethod
    def build(cls, event: str, data: Any, actor_id: Any = None) -> "EventEnvelope":
        return cls(
            event=event,
            timestamp=datetime.now(timezone.utc),
            data=data,
            triggered_by=str(actor_id) if actor_id is not None else None,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DeliveryAttempt(BaseModel):
    """One audit row per HTTP attempt. Never mutated after insert."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    subscription_id: UUID
    event: str
    payload: dict[str, Any]
    attempt: int = Field(ge=1)
    status_code: int
    response: str | None = None
    duration_ms: int
    success: bool
    error: str | None = None
    delivered_at: datetime


class DeliveryResult(BaseModel):
    delivery_id: UUID
    subscription_id: UUID
    event: str
    success: bool
    status_code: int
    duration_ms: int
    attempts: int
    last_error: str | None = None
    response: str | None = None


class DispatchResult(BaseModel):
    event: str
    matched_subscribers: int
    error: str | None = None


class DeliveryStatsSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    avg_duration_ms: float = 0.0


class EventTriggerStats(BaseModel):
    event: str
    count: int
    successful: int
    failed: int
    avg_duration_ms: float
