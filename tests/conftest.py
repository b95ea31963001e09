from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import pytest
from aiohttp import ClientSession, web

from webhook_service.domain.webhooks import WebhookSubscription
from webhook_service.services.delivery import DeliveryEngine
from webhook_service.services.dispatcher import EventDispatcher

from tests.fakes import InMemoryAuditLog, InMemoryRegistry

OWNER_ID = UUID("00000000-0000-0000-0000-0000000000aa")
SECRET = "whsec_test_secret"


@dataclass
class ReceivedRequest:
    path: str
    headers: dict[str, str]
    body: bytes
    received_at: float


@dataclass
class Receiver:
    """Local subscriber endpoint with scripted status codes per path."""

    base_url: str = ""
    requests: list[ReceivedRequest] = field(default_factory=list)
    _plans: dict[str, list[int]] = field(default_factory=dict)
    _delays: dict[str, float] = field(default_factory=dict)

    def plan(self, path: str, *statuses: int, delay: float = 0.0) -> str:
        """Answer successive requests with *statuses* (the last one repeats)."""
        self._plans[path] = list(statuses) or [200]
        self._delays[path] = delay
        return self.url(path)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def received(self, path: str) -> list[ReceivedRequest]:
        return [r for r in self.requests if r.path == path]

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(
            ReceivedRequest(
                path=request.path,
                headers={k.lower(): v for k, v in request.headers.items()},
                body=body,
                received_at=time.monotonic(),
            )
        )
        delay = self._delays.get(request.path, 0.0)
        if delay:
            await asyncio.sleep(delay)
        plan = self._plans.get(request.path, [200])
        status = plan.pop(0) if len(plan) > 1 else plan[0]
        return web.Response(status=status, text=f"status={status}")


class RecordingSleep:
    """Backoff sleep that returns at once and remembers requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_subscription(url: str, **overrides: Any) -> WebhookSubscription:
    now = datetime.now(timezone.utc)
    data: dict[str, Any] = {
        "id": uuid4(),
        "owner_id": OWNER_ID,
        "name": "Billing sink",
        "url": url,
        "secret": SECRET,
        "events": ["payment.completed"],
        "max_retries": 3,
        "timeout_seconds": 2.0,
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return WebhookSubscription.model_validate(data)


@pytest.fixture
async def receiver():
    rec = Receiver()
    app = web.Application()
    app.router.add_post("/{tail:.*}", rec.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    rec.base_url = f"http://127.0.0.1:{port}"
    try:
        yield rec
    finally:
        await runner.cleanup()


@pytest.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def backoff_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engine(http_session, audit_log, registry, backoff_sleep) -> DeliveryEngine:
    return DeliveryEngine(http_session, audit_log, registry, sleep=backoff_sleep)


@pytest.fixture
def dispatcher(registry, engine) -> EventDispatcher:
    return EventDispatcher(registry, engine)
