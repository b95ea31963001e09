"""Typed notification helpers called by domain code.

Producers hand over plain domain records (mappings with snake_case keys);
each helper copies only the fields documented for its event into the
envelope ``data`` (camelCase on the wire) and passes the acting user on.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from webhook_service.domain.webhooks import DispatchResult
from webhook_service.services.dispatcher import EventDispatcher

Record = Mapping[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookNotifier:
    def __init__(self, dispatcher: EventDispatcher):
        self._dispatcher = dispatcher

    async def _emit(self, event: str, data: dict[str, Any], actor_id: Any = None) -> DispatchResult:
        return await self._dispatcher.dispatch(event, data, actor_id)

    async def notify(self, event: str, record: Record, actor_id: Any = None) -> DispatchResult:
        """Route a domain record published by another service to its helper.

        Catalog events without a dedicated helper are forwarded with the
        record as ``data`` and *actor_id* as the triggering user.
        """
        helper = self._helpers().get(event)
        if helper is None:
            return await self._emit(event, dict(record), actor_id)
        return await helper(record)

    def _helpers(self) -> dict[str, Callable[[Record], Awaitable[DispatchResult]]]:
        return {
            "payment.created": self.on_payment_created,
            "payment.updated": self.on_payment_updated,
            "payment.completed": self.on_payment_completed,
            "payment.failed": lambda r: self.on_payment_failed(r, r.get("reason")),
            "subscription.created": self.on_subscription_created,
            "subscription.updated": lambda r: self.on_subscription_updated(r, r.get("changes")),
            "subscription.cancelled": lambda r: self.on_subscription_cancelled(r, r.get("reason")),
            "subscription.expired": self.on_subscription_expired,
            "user.created": self.on_user_created,
            "user.updated": lambda r: self.on_user_updated(r, r.get("changes")),
            "user.deleted": lambda r: self.on_user_deleted(r.get("id"), r.get("email")),
            "transaction.created": self.on_transaction_created,
            "transaction.completed": self.on_transaction_completed,
        }

    # Payments

    async def on_payment_created(self, payment: Record) -> DispatchResult:
        return await self._emit(
            "payment.created",
            {
                "id": payment.get("id"),
                "amount": payment.get("amount"),
                "currency": payment.get("currency"),
                "status": payment.get("status"),
                "userId": payment.get("user_id"),
                "planId": payment.get("plan_id"),
                "metadata": payment.get("metadata"),
            },
            payment.get("user_id"),
        )

    async def on_payment_updated(self, payment: Record) -> DispatchResult:
        return await self._emit(
            "payment.updated",
            {
                "id": payment.get("id"),
                "amount": payment.get("amount"),
                "status": payment.get("status"),
                "previousStatus": payment.get("previous_status"),
                "userId": payment.get("user_id"),
            },
            payment.get("user_id"),
        )

    async def on_payment_completed(self, payment: Record) -> DispatchResult:
        return await self._emit(
            "payment.completed",
            {
                "id": payment.get("id"),
                "amount": payment.get("amount"),
                "currency": payment.get("currency"),
                "userId": payment.get("user_id"),
                "planId": payment.get("plan_id"),
                "completedAt": _now(),
            },
            payment.get("user_id"),
        )

    async def on_payment_failed(self, payment: Record, reason: str | None = None) -> DispatchResult:
        return await self._emit(
            "payment.failed",
            {
                "id": payment.get("id"),
                "amount": payment.get("amount"),
                "userId": payment.get("user_id"),
                "reason": reason,
                "failedAt": _now(),
            },
            payment.get("user_id"),
        )

    # Subscriptions

    async def on_subscription_created(self, subscription: Record) -> DispatchResult:
        return await self._emit(
            "subscription.created",
            {
                "id": subscription.get("id"),
                "userId": subscription.get("user_id"),
                "planId": subscription.get("plan_id"),
                "plan": subscription.get("plan"),
                "status": subscription.get("status"),
                "startDate": subscription.get("start_date"),
                "endDate": subscription.get("end_date"),
                "amount": subscription.get("amount"),
            },
            subscription.get("user_id"),
        )

    async def on_subscription_updated(
        self, subscription: Record, changes: Mapping[str, Any] | None = None
    ) -> DispatchResult:
        return await self._emit(
            "subscription.updated",
            {
                "id": subscription.get("id"),
                "userId": subscription.get("user_id"),
                "status": subscription.get("status"),
                "changes": dict(changes) if changes else None,
                "updatedAt": _now(),
            },
            subscription.get("user_id"),
        )

    async def on_subscription_cancelled(
        self, subscription: Record, reason: str | None = None
    ) -> DispatchResult:
        return await self._emit(
            "subscription.cancelled",
            {
                "id": subscription.get("id"),
                "userId": subscription.get("user_id"),
                "planId": subscription.get("plan_id"),
                "cancelledAt": _now(),
                "reason": reason,
            },
            subscription.get("user_id"),
        )

    async def on_subscription_expired(self, subscription: Record) -> DispatchResult:
        return await self._emit(
            "subscription.expired",
            {
                "id": subscription.get("id"),
                "userId": subscription.get("user_id"),
                "planId": subscription.get("plan_id"),
                "expiredAt": _now(),
            },
            subscription.get("user_id"),
        )

    # Users

    async def on_user_created(self, user: Record) -> DispatchResult:
        return await self._emit(
            "user.created",
            {
                "id": user.get("id"),
                "email": user.get("email"),
                "name": user.get("name") or user.get("full_name"),
                "role": user.get("role"),
                "source": user.get("source"),
                "createdAt": user.get("created_at"),
            },
        )

    async def on_user_updated(
        self, user: Record, changes: Mapping[str, Any] | None = None
    ) -> DispatchResult:
        return await self._emit(
            "user.updated",
            {
                "id": user.get("id"),
                "email": user.get("email"),
                "changes": dict(changes) if changes else None,
                "updatedAt": _now(),
            },
            user.get("id"),
        )

    async def on_user_deleted(self, user_id: Any, email: str | None = None) -> DispatchResult:
        return await self._emit(
            "user.deleted",
            {"id": user_id, "email": email, "deletedAt": _now()},
        )

    # Transactions

    async def on_transaction_created(self, transaction: Record) -> DispatchResult:
        return await self._emit(
            "transaction.created",
            {
                "id": transaction.get("id"),
                "userId": transaction.get("user_id"),
                "amount": transaction.get("amount"),
                "type": transaction.get("type"),
                "status": transaction.get("status"),
                "gateway": transaction.get("payment_gateway"),
                "createdAt": transaction.get("created_at"),
            },
            transaction.get("user_id"),
        )

    async def on_transaction_completed(self, transaction: Record) -> DispatchResult:
        return await self._emit(
            "transaction.completed",
            {
                "id": transaction.get("id"),
                "userId": transaction.get("user_id"),
                "amount": transaction.get("amount"),
                "type": transaction.get("type"),
                "gateway": transaction.get("payment_gateway"),
                "completedAt": _now(),
            },
            transaction.get("user_id"),
        )
