"""Webhook subscription management endpoints."""
from __future__ import annotations

from typing import Any

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from webhook_service.api.utils import (
    int_param,
    paginated_response,
    pagination_params,
    parse_datetime,
    parse_uuid,
    read_json,
)
from webhook_service.core.exceptions import InvalidSubscriptionError, NotFoundError
from webhook_service.domain.webhooks import WEBHOOK_EVENTS, AuthHeader, RetryPolicy
from webhook_service.services.dependencies import (
    get_webhook_service,
    require_event_publisher,
    require_webhook_manager,
)
from webhook_service.services.signing import generate_webhook_secret
from webhook_service.webhooks_dispatcher import get_notifier

routes = web.RouteTableDef()


class WebhookCreateDTO(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    url: str
    events: list[str] = Field(min_length=1)
    secret: str | None = None
    retry_policy: RetryPolicy = RetryPolicy.EXPONENTIAL
    max_retries: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1, le=60)
    verify_ssl: bool = True
    auth_headers: list[AuthHeader] = Field(default_factory=list)


class WebhookUpdateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    url: str | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    enabled: bool | None = None
    retry_policy: RetryPolicy | None = None
    max_retries: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1, le=60)
    verify_ssl: bool | None = None
    auth_headers: list[AuthHeader] | None = None


class WebhookTestDTO(BaseModel):
    event: str | None = None
    data: Any = None


class EventPublishDTO(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    actor_id: str | None = None


def _validate(model: type[BaseModel], body: dict[str, Any]) -> Any:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc


@routes.get("/api/v1/webhook-events")
async def list_webhook_events(request: web.Request):
    await require_webhook_manager(request)
    return web.json_response({"events": list(WEBHOOK_EVENTS)})


@routes.get("/api/v1/webhook-events/stats")
async def webhook_trigger_stats(request: web.Request):
    await require_webhook_manager(request)
    query = request.rel_url.query
    start = parse_datetime(query.get("start"), "start")
    end = parse_datetime(query.get("end"), "end")
    service = await get_webhook_service(request)
    stats = await service.trigger_stats(start, end)
    return web.json_response({"stats": [s.model_dump(mode="json") for s in stats]})


@routes.post("/api/v1/webhook-events/{event}")
async def publish_webhook_event(request: web.Request):
    """Fan a domain event out to subscribers; returns before any delivery ends."""
    await require_event_publisher(request)
    event = request.match_info["event"]
    if event not in WEBHOOK_EVENTS:
        raise web.HTTPBadRequest(text=f"Unknown event: {event}")
    dto: EventPublishDTO = _validate(EventPublishDTO, await read_json(request))
    result = await get_notifier(request.app).notify(event, dto.data, dto.actor_id)
    if result.error is not None:
        raise web.HTTPServiceUnavailable(text=result.error)
    return web.json_response(result.model_dump(mode="json"), status=202)


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    user = await require_webhook_manager(request)
    limit, offset = pagination_params(request)
    service = await get_webhook_service(request)
    items, total = await service.list_subscriptions(user.user_id, limit=limit, offset=offset)
    payload = paginated_response(
        [item.sanitized() for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    user = await require_webhook_manager(request)
    dto: WebhookCreateDTO = _validate(WebhookCreateDTO, await read_json(request))
    secret = dto.secret or generate_webhook_secret()
    service = await get_webhook_service(request)
    try:
        sub = await service.register(
            owner_id=user.user_id,
            name=dto.name,
            url=dto.url,
            secret=secret,
            events=dto.events,
            retry_policy=dto.retry_policy,
            max_retries=dto.max_retries,
            timeout_seconds=dto.timeout_seconds,
            verify_ssl=dto.verify_ssl,
            auth_headers=dto.auth_headers,
        )
    except InvalidSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    # The plaintext secret is shown once, at creation.
    return web.json_response({**sub.sanitized(), "secret": secret}, status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        sub = await service.get_subscription(user.user_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(sub.sanitized())


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto: WebhookUpdateDTO = _validate(WebhookUpdateDTO, await read_json(request))
    changes = {
        field: getattr(dto, field)
        for field in dto.model_fields_set
        if getattr(dto, field) is not None
    }
    service = await get_webhook_service(request)
    try:
        sub = await service.update_subscription(
            user.user_id, webhook_id, changes, updated_by=user.user_id
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(sub.sanitized())


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        await service.delete_subscription(user.user_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/rotate-secret")
async def rotate_webhook_secret(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        sub, secret = await service.rotate_secret(
            user.user_id, webhook_id, updated_by=user.user_id
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({**sub.sanitized(), "secret": secret})


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto: WebhookTestDTO = _validate(WebhookTestDTO, await read_json(request))
    service = await get_webhook_service(request)
    try:
        result = await service.send_test(
            user.user_id,
            webhook_id,
            event=dto.event,
            data=dto.data,
            actor_id=user.user_id,
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(
        {
            "success": result.success,
            "message": (
                "Test webhook delivered successfully"
                if result.success
                else "Test webhook delivery failed"
            ),
            "data": {
                "status_code": result.status_code,
                "duration_ms": result.duration_ms,
                "response": result.response,
                "error": result.last_error,
            },
        }
    )


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_webhook_deliveries(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    limit = int_param(request, "limit", default=10, maximum=100)
    service = await get_webhook_service(request)
    try:
        deliveries = await service.recent_deliveries(user.user_id, webhook_id, limit=limit)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(
        {
            "deliveries": [d.model_dump(mode="json") for d in deliveries],
            "count": len(deliveries),
        }
    )


@routes.get("/api/v1/webhooks/{webhook_id}/stats")
async def webhook_delivery_stats(request: web.Request):
    user = await require_webhook_manager(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        stats = await service.delivery_stats(user.user_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(stats.model_dump(mode="json"))
