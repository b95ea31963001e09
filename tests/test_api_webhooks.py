from __future__ import annotations

import json
import uuid

import pytest
from aiohttp import web

from webhook_service.api.router import setup_routes
from webhook_service.domain.webhooks import WEBHOOK_EVENTS
from webhook_service.services.notifications import WebhookNotifier
from webhook_service.services.webhooks import WebhookService

from tests.conftest import OWNER_ID


def make_headers(user_id: uuid.UUID = OWNER_ID, role: str = "admin") -> dict[str, str]:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


@pytest.fixture
def service(registry, audit_log, engine) -> WebhookService:
    return WebhookService(registry, audit_log, engine)


@pytest.fixture
async def api_client(aiohttp_client, service, dispatcher, monkeypatch):
    async def provide_service(_request):
        return service

    notifier = WebhookNotifier(dispatcher)
    monkeypatch.setattr(
        "webhook_service.api.routes.webhooks.get_webhook_service", provide_service
    )
    monkeypatch.setattr("webhook_service.api.routes.webhooks.get_notifier", lambda _app: notifier)
    app = web.Application()
    setup_routes(app)
    return await aiohttp_client(app)


async def _create(client, url="https://hooks.example.com/in", **extra):
    body = {"name": "Billing sink", "url": url, "events": ["payment.completed"], **extra}
    resp = await client.post("/api/v1/webhooks", json=body, headers=make_headers())
    assert resp.status == 201, await resp.text()
    return await resp.json()


async def test_list_event_catalog(api_client):
    resp = await api_client.get("/api/v1/webhook-events", headers=make_headers())
    assert resp.status == 200
    assert (await resp.json())["events"] == list(WEBHOOK_EVENTS)


async def test_requires_user_header(api_client):
    resp = await api_client.get("/api/v1/webhooks")
    assert resp.status == 401


async def test_requires_manager_role(api_client):
    resp = await api_client.get("/api/v1/webhooks", headers=make_headers(role="viewer"))
    assert resp.status == 403


async def test_create_returns_secret_once(api_client):
    created = await _create(api_client)

    assert created["secret"].startswith("whsec_")
    assert created["max_retries"] == 3
    assert created["retry_policy"] == "exponential"

    resp = await api_client.get(f"/api/v1/webhooks/{created['id']}", headers=make_headers())
    assert resp.status == 200
    assert "secret" not in await resp.json()


async def test_create_keeps_caller_secret(api_client):
    created = await _create(api_client, secret="whsec_mine")
    assert created["secret"] == "whsec_mine"


@pytest.mark.parametrize(
    "body",
    [
        {"name": "x", "url": "ftp://example.com", "events": ["payment.completed"]},
        {"name": "x", "url": "https://example.com", "events": []},
        {"name": "x", "url": "https://example.com", "events": ["order.shipped"]},
        {"name": "x", "url": "https://example.com", "events": ["payment.completed"], "max_retries": 20},
        {"url": "https://example.com", "events": ["payment.completed"]},
    ],
)
async def test_create_rejects_invalid_payload(api_client, body):
    resp = await api_client.post("/api/v1/webhooks", json=body, headers=make_headers())
    assert resp.status == 400


async def test_list_is_scoped_to_owner(api_client):
    await _create(api_client)
    await _create(api_client, url="https://hooks.example.com/second")

    resp = await api_client.get("/api/v1/webhooks", headers=make_headers())
    body = await resp.json()
    assert body["total"] == 2
    assert all("secret" not in item for item in body["webhooks"])

    resp = await api_client.get("/api/v1/webhooks", headers=make_headers(uuid.uuid4()))
    assert (await resp.json())["total"] == 0


async def test_update_and_disable(api_client, registry):
    created = await _create(api_client)

    resp = await api_client.patch(
        f"/api/v1/webhooks/{created['id']}",
        json={"enabled": False, "events": ["user.created"]},
        headers=make_headers(),
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["enabled"] is False
    assert body["status"] == "disabled"
    assert body["events"] == ["user.created"]
    assert await registry.lookup_subscribers("user.created") == []


async def test_update_rejects_unknown_fields(api_client):
    created = await _create(api_client)

    resp = await api_client.patch(
        f"/api/v1/webhooks/{created['id']}",
        json={"delivery_stats": {"total": 99}},
        headers=make_headers(),
    )
    assert resp.status == 400


async def test_unknown_or_foreign_webhook_is_not_found(api_client):
    created = await _create(api_client)

    resp = await api_client.get(f"/api/v1/webhooks/{uuid.uuid4()}", headers=make_headers())
    assert resp.status == 404
    resp = await api_client.get(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers(uuid.uuid4())
    )
    assert resp.status == 404
    resp = await api_client.get("/api/v1/webhooks/not-a-uuid", headers=make_headers())
    assert resp.status == 400


async def test_rotate_secret(api_client, registry):
    created = await _create(api_client)

    resp = await api_client.post(
        f"/api/v1/webhooks/{created['id']}/rotate-secret", headers=make_headers()
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["secret"] != created["secret"]
    assert registry.snapshot(uuid.UUID(created["id"])).secret == body["secret"]


async def test_delete(api_client):
    created = await _create(api_client)

    resp = await api_client.delete(f"/api/v1/webhooks/{created['id']}", headers=make_headers())
    assert resp.status == 204
    resp = await api_client.get(f"/api/v1/webhooks/{created['id']}", headers=make_headers())
    assert resp.status == 404


async def test_send_test_webhook(api_client, receiver, audit_log):
    created = await _create(api_client, url=receiver.plan("/api-test", 200))

    resp = await api_client.post(
        f"/api/v1/webhooks/{created['id']}/test",
        json={"event": "payment.completed", "data": {"id": "pay_1"}},
        headers=make_headers(),
    )

    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["data"]["status_code"] == 200
    assert len(receiver.received("/api-test")) == 1
    assert audit_log.rows == []


async def test_deliveries_and_stats(api_client, receiver, dispatcher):
    created = await _create(api_client, url=receiver.plan("/api-hist", 500, 200))

    await dispatcher.dispatch("payment.completed", {"id": "pay_1"})
    await dispatcher.wait_idle()

    resp = await api_client.get(
        f"/api/v1/webhooks/{created['id']}/deliveries?limit=1", headers=make_headers()
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["count"] == 1
    assert body["deliveries"][0]["attempt"] == 2
    assert body["deliveries"][0]["success"] is True

    resp = await api_client.get(f"/api/v1/webhooks/{created['id']}/stats", headers=make_headers())
    stats = await resp.json()
    assert (stats["total"], stats["successful"], stats["failed"]) == (2, 1, 1)

    resp = await api_client.get("/api/v1/webhooks", headers=make_headers())
    [item] = (await resp.json())["webhooks"]
    assert item["delivery_stats"] == {"total": 1, "successful": 1, "failed": 0}


async def test_trigger_stats_endpoint(api_client, receiver, dispatcher):
    await _create(api_client, url=receiver.plan("/api-trig", 200))
    await dispatcher.dispatch("payment.completed", {"id": "pay_1"})
    await dispatcher.wait_idle()

    resp = await api_client.get("/api/v1/webhook-events/stats", headers=make_headers())
    assert resp.status == 200
    [row] = (await resp.json())["stats"]
    assert row["event"] == "payment.completed"
    assert row["count"] == 1


async def test_create_rejects_header_injection(api_client):
    body = {
        "name": "x",
        "url": "https://hooks.example.com/in",
        "events": ["payment.completed"],
        "auth_headers": [{"name": "X-Token", "value": "a\r\nX-Injected: 1"}],
    }
    resp = await api_client.post("/api/v1/webhooks", json=body, headers=make_headers())
    assert resp.status == 400

    resp = await api_client.get("/api/v1/webhooks", headers=make_headers())
    assert (await resp.json())["webhooks"] == []


async def test_send_test_rejects_unknown_event(api_client, receiver):
    created = await _create(api_client, url=receiver.plan("/api-test-unknown", 200))

    resp = await api_client.post(
        f"/api/v1/webhooks/{created['id']}/test",
        json={"event": "order.shipped"},
        headers=make_headers(),
    )

    assert resp.status == 400
    assert receiver.received("/api-test-unknown") == []


async def test_publish_event_returns_before_delivery(api_client, receiver, dispatcher, audit_log):
    created = await _create(
        api_client, url=receiver.plan("/api-pub", 200, delay=0.5), events=["invoice.paid"]
    )

    resp = await api_client.post(
        "/api/v1/webhook-events/invoice.paid",
        json={"data": {"id": "inv_1"}, "actor_id": "billing"},
        headers=make_headers(role="service"),
    )

    assert resp.status == 202
    assert await resp.json() == {
        "event": "invoice.paid",
        "matched_subscribers": 1,
        "error": None,
    }
    assert dispatcher.inflight == 1
    assert audit_log.rows == []

    await dispatcher.wait_idle()

    [row] = audit_log.rows
    assert row.subscription_id == uuid.UUID(created["id"])
    assert row.success
    [request] = receiver.received("/api-pub")
    body = json.loads(request.body)
    assert body["data"] == {"id": "inv_1"}
    assert body["triggeredBy"] == "billing"


async def test_publish_event_routes_through_notifier_helper(api_client, receiver, dispatcher):
    await _create(api_client, url=receiver.plan("/api-pub-helper", 200))

    resp = await api_client.post(
        "/api/v1/webhook-events/payment.completed",
        json={"data": {"id": "pay_1", "amount": 1999, "user_id": "user_1", "card_number": "4111"}},
        headers=make_headers(role="service"),
    )
    assert resp.status == 202
    assert (await resp.json())["matched_subscribers"] == 1
    await dispatcher.wait_idle()

    body = json.loads(receiver.received("/api-pub-helper")[0].body)
    assert body["data"]["userId"] == "user_1"
    assert "card_number" not in body["data"]
    assert body["triggeredBy"] == "user_1"


async def test_publish_event_without_subscribers(api_client, dispatcher):
    resp = await api_client.post(
        "/api/v1/webhook-events/user.created",
        json={"data": {"id": "user_9"}},
        headers=make_headers(role="service"),
    )

    assert resp.status == 202
    assert (await resp.json())["matched_subscribers"] == 0
    assert dispatcher.inflight == 0


async def test_publish_event_rejects_unknown_event(api_client):
    resp = await api_client.post(
        "/api/v1/webhook-events/order.shipped", json={"data": {}}, headers=make_headers(role="service")
    )
    assert resp.status == 400


async def test_publish_event_requires_publisher_role(api_client):
    resp = await api_client.post(
        "/api/v1/webhook-events/invoice.paid", json={"data": {}}, headers=make_headers(role="viewer")
    )
    assert resp.status == 403
