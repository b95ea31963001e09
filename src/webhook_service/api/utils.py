"""Helper utilities for API handlers."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from aiohttp import web

from backend_common.aiohttp_app import read_json as read_json  # noqa: F401


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def parse_datetime(value: str | None, label: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def int_param(request: web.Request, name: str, *, default: int, maximum: int) -> int:
    raw = request.rel_url.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"{name} must be an integer") from exc
    if value <= 0:
        return default
    return min(value, maximum)


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    limit = int_param(request, "limit", default=default_limit, maximum=max_limit)
    try:
        offset = int(request.rel_url.query.get("offset", "0"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="offset must be an integer") from exc
    return limit, max(offset, 0)


def paginated_response(
    items: list[Any],
    *,
    limit: int,
    offset: int,
    key: str,
    total: int,
) -> dict[str, Any]:
    return {
        key: items,
        "total": total,
        "page": offset // limit + 1 if limit else 1,
        "page_size": limit,
    }
