"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from aiohttp import web

from backend_common.db.pool import get_pool
from webhook_service.repositories.webhooks import (
    DeliveryAttemptRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.webhooks import WebhookService
from webhook_service.webhooks_dispatcher import get_engine

_WEBHOOK_SERVICE_KEY = "webhook_service"

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

WEBHOOK_MANAGER_ROLES = ("admin", "super_admin")
# Internal callers (other backend services) publish domain events.
EVENT_PUBLISHER_ROLES = ("service", *WEBHOOK_MANAGER_ROLES)


@dataclass
class UserContext:
    user_id: UUID
    role: str | None


async def require_current_user(request: web.Request) -> UserContext:
    """Identity comes from headers set by the API gateway after authentication."""
    user_header = request.headers.get(USER_ID_HEADER)
    if user_header is None:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    try:
        user_id = UUID(user_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc
    return UserContext(user_id=user_id, role=request.headers.get(USER_ROLE_HEADER))


def ensure_role(user: UserContext, roles: tuple[str, ...] = WEBHOOK_MANAGER_ROLES) -> None:
    if user.role not in roles:
        raise web.HTTPForbidden(reason="Insufficient role")


async def require_webhook_manager(request: web.Request) -> UserContext:
    user = await require_current_user(request)
    ensure_role(user)
    return user


async def require_event_publisher(request: web.Request) -> UserContext:
    user = await require_current_user(request)
    ensure_role(user, EVENT_PUBLISHER_ROLES)
    return user


async def get_webhook_service(request: web.Request) -> WebhookService:
    service = request.get(_WEBHOOK_SERVICE_KEY)
    if service is None:
        pool = await get_pool()
        service = WebhookService(
            WebhookSubscriptionRepository(pool),
            DeliveryAttemptRepository(pool),
            get_engine(request.app),
        )
        request[_WEBHOOK_SERVICE_KEY] = service
    return service
