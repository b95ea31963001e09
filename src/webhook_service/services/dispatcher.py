"""Event dispatcher: fans one domain event out to every matching subscriber.

``dispatch`` resolves subscribers, builds a single envelope and starts one
asyncio task per subscriber without awaiting it. Each task owns its own
retry loop, so a slow or failing endpoint never delays the others. Task
failures are logged by a supervisor wrapper instead of disappearing with the
task; aggregated completion is logged once all sessions of a dispatch end.

Deliveries live only in this process. Sessions still running when the
process stops are cancelled and reported, never resumed.
"""
from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Iterable, Protocol

import structlog
from aiohttp import web

from webhook_service.domain.webhooks import (
    DeliveryResult,
    DispatchResult,
    EventEnvelope,
    WebhookSubscription,
)

logger = structlog.get_logger(__name__)


class SubscriberLookup(Protocol):
    async def lookup_subscribers(self, event: str) -> list[WebhookSubscription]: ...


class Deliverer(Protocol):
    async def deliver(
        self,
        subscription: WebhookSubscription,
        event: str,
        envelope: EventEnvelope,
        *,
        is_test: bool = False,
    ) -> DeliveryResult: ...


class EventDispatcher:
    def __init__(self, registry: SubscriberLookup, engine: Deliverer):
        self._registry = registry
        self._engine = engine
        self._sessions: set[asyncio.Task] = set()
        self._watchers: set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        """Delivery sessions currently running."""
        return len(self._sessions)

    async def dispatch(self, event: str, payload: Any, actor_id: Any = None) -> DispatchResult:
        """Start delivery of *event* to all matching subscribers and return at once.

        Never raises: lookup or envelope errors are logged and reported in
        ``DispatchResult.error``.
        """
        log = logger.bind(webhook_event=event)
        try:
            subscribers = await self._registry.lookup_subscribers(event)
            if not subscribers:
                log.debug("webhook_no_subscribers")
                return DispatchResult(event=event, matched_subscribers=0)
            envelope = EventEnvelope.build(event, payload, actor_id)
            envelope.to_wire()  # unencodable payloads fail here, not in every session
        except Exception as exc:
            log.exception("webhook_dispatch_failed")
            return DispatchResult(event=event, matched_subscribers=0, error=str(exc))

        sessions = [
            self._spawn(self._supervise(sub, event, envelope), self._sessions)
            for sub in subscribers
        ]
        self._spawn(self._report(event, sessions), self._watchers)
        log.info("webhook_dispatched", matched_subscribers=len(sessions))
        return DispatchResult(event=event, matched_subscribers=len(sessions))

    async def dispatch_many(
        self, events: Iterable[tuple[str, Any, Any]]
    ) -> list[DispatchResult]:
        """Dispatch ``(event, payload, actor_id)`` triples one after another."""
        return [await self.dispatch(event, payload, actor) for event, payload, actor in events]

    async def wait_idle(self) -> None:
        """Wait until every started session and its completion report are done."""
        while self._sessions or self._watchers:
            await asyncio.gather(*self._sessions, *self._watchers, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], bucket: set[asyncio.Task]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    async def _supervise(
        self, subscription: WebhookSubscription, event: str, envelope: EventEnvelope
    ) -> DeliveryResult | None:
        try:
            return await self._engine.deliver(subscription, event, envelope)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "webhook_session_crashed",
                subscription_id=str(subscription.id),
                webhook_event=event,
            )
            return None

    async def _report(self, event: str, sessions: list[asyncio.Task]) -> None:
        results = await asyncio.gather(*sessions, return_exceptions=True)
        delivered = sum(1 for r in results if isinstance(r, DeliveryResult) and r.success)
        logger.info(
            "webhook_dispatch_completed",
            webhook_event=event,
            delivered=delivered,
            total=len(sessions),
        )

    async def start(self, _app: web.Application) -> None:
        logger.warning(
            "webhook_queue_not_durable",
            detail="in-flight deliveries are held in memory and are lost on restart",
        )

    async def close(self, grace_seconds: float = 0.0) -> int:
        """Cancel sessions still running after *grace_seconds*. Returns how many were abandoned."""
        if self._sessions and grace_seconds > 0:
            await asyncio.wait(set(self._sessions), timeout=grace_seconds)
        abandoned = list(self._sessions)
        if abandoned:
            logger.warning("webhook_deliveries_abandoned", count=len(abandoned))
        for task in [*abandoned, *self._watchers]:
            task.cancel()
        await asyncio.gather(*abandoned, *self._watchers, return_exceptions=True)
        return len(abandoned)
