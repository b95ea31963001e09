"""Lifecycle of the in-process delivery stack (HTTP session, engine, dispatcher)."""
from __future__ import annotations

from aiohttp import ClientSession, web

from backend_common.db.pool import get_pool

from webhook_service.repositories.webhooks import (
    DeliveryAttemptRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.delivery import DeliveryEngine
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.notifications import WebhookNotifier
from webhook_service.settings import settings

_WEBHOOK_SESSION_KEY = "webhook_http_session"
_WEBHOOK_ENGINE_KEY = "webhook_delivery_engine"
_WEBHOOK_DISPATCHER_KEY = "webhook_event_dispatcher"
_WEBHOOK_NOTIFIER_KEY = "webhook_notifier"


async def start_webhook_dispatcher(app: web.Application) -> None:
    """Register with ``app.on_startup`` after the database pool hook."""
    pool = await get_pool()
    registry = WebhookSubscriptionRepository(pool)
    audit_log = DeliveryAttemptRepository(pool)

    session = ClientSession()
    engine = DeliveryEngine(session, audit_log, registry)
    dispatcher = EventDispatcher(registry, engine)

    app[_WEBHOOK_SESSION_KEY] = session
    app[_WEBHOOK_ENGINE_KEY] = engine
    app[_WEBHOOK_DISPATCHER_KEY] = dispatcher
    app[_WEBHOOK_NOTIFIER_KEY] = WebhookNotifier(dispatcher)
    await dispatcher.start(app)


async def stop_webhook_dispatcher(app: web.Application) -> None:
    dispatcher: EventDispatcher | None = app.get(_WEBHOOK_DISPATCHER_KEY)
    if dispatcher is not None:
        await dispatcher.close(grace_seconds=settings.webhook_shutdown_grace_seconds)
    session: ClientSession | None = app.get(_WEBHOOK_SESSION_KEY)
    if session is not None:
        await session.close()


def get_engine(app: web.Application) -> DeliveryEngine:
    return app[_WEBHOOK_ENGINE_KEY]


def get_dispatcher(app: web.Application) -> EventDispatcher:
    return app[_WEBHOOK_DISPATCHER_KEY]


def get_notifier(app: web.Application) -> WebhookNotifier:
    return app[_WEBHOOK_NOTIFIER_KEY]
