from __future__ import annotations

import json
import socket
from unittest.mock import patch

import pytest
from aiohttp import ClientSession

from webhook_service.domain.webhooks import AuthHeader, EventEnvelope, RetryPolicy
from webhook_service.services import delivery as delivery_module
from webhook_service.services.delivery import (
    ATTEMPT_HEADER,
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    backoff_ms,
    max_attempts,
    read_prefix,
)
from webhook_service.services.signing import SignatureSigner, canonical_json
from webhook_service.settings import settings

from tests.conftest import SECRET, make_subscription

EVENT = "payment.completed"


def _envelope() -> EventEnvelope:
    return EventEnvelope.build(EVENT, {"id": "pay_1", "amount": 1999}, "user_1")


def _closed_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.parametrize(
    "attempt, expected",
    [(1, 1000), (2, 2000), (3, 4000), (5, 16000), (6, 30000), (10, 30000)],
)
def test_exponential_backoff_doubles_up_to_cap(attempt, expected):
    assert backoff_ms(attempt, RetryPolicy.EXPONENTIAL) == expected


def test_linear_backoff_is_constant():
    assert [backoff_ms(n, RetryPolicy.LINEAR) for n in (1, 2, 7)] == [5000, 5000, 5000]


def test_max_attempts_by_policy_and_mode():
    sub = make_subscription("http://example.invalid/hook", max_retries=5)
    assert max_attempts(sub) == 5
    assert max_attempts(sub, is_test=True) == 1
    assert max_attempts(sub.model_copy(update={"retry_policy": RetryPolicy.NONE})) == 1


async def test_retries_until_success(receiver, registry, audit_log, engine, backoff_sleep):
    url = receiver.plan("/a", 500, 500, 200)
    sub = registry.add(make_subscription(url, max_retries=3))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert result.success
    assert result.attempts == 3
    assert result.status_code == 200
    assert result.last_error is None
    assert backoff_sleep.delays == [1.0, 2.0]

    rows = audit_log.for_subscription(sub.id)
    assert [(r.attempt, r.status_code, r.success) for r in rows] == [
        (1, 500, False),
        (2, 500, False),
        (3, 200, True),
    ]
    assert rows[0].error.startswith("HTTP 500")
    assert rows[2].error is None

    stats = registry.snapshot(sub.id).delivery_stats
    assert (stats.total, stats.successful, stats.failed) == (1, 1, 0)
    assert registry.snapshot(sub.id).last_delivery_at is not None


async def test_timeouts_exhaust_retries(receiver, registry, audit_log, engine, backoff_sleep):
    url = receiver.plan("/slow", 200, delay=0.5)
    sub = registry.add(make_subscription(url, max_retries=2, timeout_seconds=0.1))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert not result.success
    assert result.attempts == 2
    assert result.status_code == 0
    assert "Timed out" in result.last_error
    assert backoff_sleep.delays == [1.0]

    rows = audit_log.for_subscription(sub.id)
    assert len(rows) == 2
    assert all(r.status_code == 0 and not r.success for r in rows)
    assert all("Timed out" in r.error for r in rows)

    stats = registry.snapshot(sub.id).delivery_stats
    assert (stats.total, stats.successful, stats.failed) == (1, 0, 1)


async def test_connection_refused_is_recorded_as_failed_attempt(registry, audit_log, engine):
    sub = registry.add(
        make_subscription(
            f"http://127.0.0.1:{_closed_port()}/hook",
            retry_policy=RetryPolicy.NONE,
        )
    )

    result = await engine.deliver(sub, EVENT, _envelope())

    assert not result.success
    assert result.attempts == 1
    assert result.status_code == 0
    assert result.last_error
    [row] = audit_log.for_subscription(sub.id)
    assert row.status_code == 0
    assert row.error == result.last_error


async def test_linear_policy_waits_five_seconds(receiver, registry, engine, backoff_sleep):
    url = receiver.plan("/linear", 503)
    sub = registry.add(make_subscription(url, retry_policy=RetryPolicy.LINEAR, max_retries=3))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert not result.success
    assert result.attempts == 3
    assert backoff_sleep.delays == [5.0, 5.0]


async def test_no_retry_policy_makes_single_attempt(receiver, registry, audit_log, engine, backoff_sleep):
    url = receiver.plan("/once", 500)
    sub = registry.add(make_subscription(url, retry_policy=RetryPolicy.NONE, max_retries=5))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert result.attempts == 1
    assert backoff_sleep.delays == []
    assert len(receiver.received("/once")) == 1
    assert len(audit_log.for_subscription(sub.id)) == 1


async def test_test_delivery_makes_one_attempt_and_writes_nothing(
    receiver, registry, audit_log, engine, backoff_sleep
):
    url = receiver.plan("/test", 500)
    sub = registry.add(make_subscription(url, max_retries=3))

    result = await engine.deliver(sub, EVENT, _envelope(), is_test=True)

    assert not result.success
    assert result.attempts == 1
    assert result.status_code == 500
    assert backoff_sleep.delays == []
    assert audit_log.rows == []
    stats = registry.snapshot(sub.id).delivery_stats
    assert (stats.total, stats.successful, stats.failed) == (0, 0, 0)
    assert registry.snapshot(sub.id).last_delivery_at is None


async def test_request_headers_and_signed_body(receiver, registry, engine):
    url = receiver.plan("/headers", 500, 200)
    sub = registry.add(make_subscription(url))
    envelope = _envelope()

    result = await engine.deliver(sub, EVENT, envelope)

    first, second = receiver.received("/headers")
    expected_body = canonical_json(envelope.to_wire())
    for index, request in enumerate((first, second), start=1):
        assert request.body == expected_body
        assert request.headers["content-type"] == "application/json"
        assert request.headers[EVENT_HEADER.lower()] == EVENT
        assert request.headers[ATTEMPT_HEADER.lower()] == str(index)
        assert request.headers["user-agent"] == settings.webhook_user_agent
        assert SignatureSigner.verify(
            SECRET, request.body, request.headers[SIGNATURE_HEADER.lower()]
        )
    assert first.headers[DELIVERY_ID_HEADER.lower()] == str(result.delivery_id)
    assert second.headers[DELIVERY_ID_HEADER.lower()] == str(result.delivery_id)


async def test_body_carries_envelope_fields(receiver, registry, engine):
    url = receiver.plan("/envelope", 200)
    sub = registry.add(make_subscription(url))

    await engine.deliver(sub, EVENT, _envelope())

    [request] = receiver.received("/envelope")
    body = json.loads(request.body)
    assert set(body) == {"event", "timestamp", "data", "triggeredBy"}
    assert body["event"] == EVENT
    assert body["triggeredBy"] == "user_1"
    assert body["data"] == {"id": "pay_1", "amount": 1999}


async def test_custom_auth_headers_are_sent(receiver, registry, engine):
    url = receiver.plan("/auth", 200)
    sub = registry.add(
        make_subscription(
            url,
            auth_headers=[
                AuthHeader(name="Authorization", value="Bearer abc123"),
                AuthHeader(name="X-Tenant", value="acme"),
            ],
        )
    )

    await engine.deliver(sub, EVENT, _envelope())

    [request] = receiver.received("/auth")
    assert request.headers["authorization"] == "Bearer abc123"
    assert request.headers["x-tenant"] == "acme"


@pytest.mark.parametrize("verify_ssl", [True, False])
async def test_certificate_checks_follow_subscription(
    receiver, registry, engine, verify_ssl
):
    url = receiver.plan("/tls", 200)
    sub = registry.add(make_subscription(url, verify_ssl=verify_ssl))

    with patch.object(
        ClientSession, "post", autospec=True, side_effect=ClientSession.post
    ) as post:
        await engine.deliver(sub, EVENT, _envelope())

    kwargs = post.call_args.kwargs
    if verify_ssl:
        assert "ssl" not in kwargs
    else:
        assert kwargs["ssl"] is False


async def test_response_body_is_truncated(receiver, registry, audit_log, engine, monkeypatch):
    monkeypatch.setattr(settings, "webhook_response_max_chars", 5)
    url = receiver.plan("/long", 200)
    sub = registry.add(make_subscription(url))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert result.response == "statu"
    assert audit_log.for_subscription(sub.id)[0].response == "statu"


async def test_stats_stay_consistent_across_sessions(receiver, registry, engine):
    ok_url = receiver.plan("/mixed-ok", 200)
    bad_url = receiver.plan("/mixed-bad", 400)
    sub = registry.add(make_subscription(ok_url, max_retries=1))

    await engine.deliver(sub, EVENT, _envelope())
    sub = registry.add(registry.snapshot(sub.id).model_copy(update={"url": bad_url}))
    await engine.deliver(sub, EVENT, _envelope())
    await engine.deliver(sub, EVENT, _envelope())

    stats = registry.snapshot(sub.id).delivery_stats
    assert stats.total == stats.successful + stats.failed == 3
    assert (stats.successful, stats.failed) == (1, 2)


async def test_header_rejected_by_client_is_a_failed_attempt(receiver, registry, audit_log, engine):
    url = receiver.plan("/crlf", 200)
    # Skips validation, like a row stored before header checks existed.
    smuggled = AuthHeader.model_construct(name="X-Token", value="a\r\nX-Injected: 1")
    sub = registry.add(make_subscription(url, max_retries=1, auth_headers=[smuggled]))

    result = await engine.deliver(sub, EVENT, _envelope())

    assert not result.success
    assert result.attempts == 1
    assert result.status_code == 0
    assert result.last_error.startswith("Invalid request")
    assert receiver.received("/crlf") == []
    [row] = audit_log.for_subscription(sub.id)
    assert row.status_code == 0
    assert not row.success
    stats = registry.snapshot(sub.id).delivery_stats
    assert (stats.total, stats.successful, stats.failed) == (1, 0, 1)


class ChunkedStream:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.requested: list[int] = []

    async def read(self, n: int = -1) -> bytes:
        self.requested.append(n)
        if not self._chunks:
            return b""
        chunk = self._chunks.pop(0)
        head, rest = chunk[:n], chunk[n:]
        if rest:
            self._chunks.insert(0, rest)
        return head


async def test_read_prefix_stops_at_limit():
    stream = ChunkedStream([b"abc", b"defgh", b"ijklmnop" * 1000])

    assert await read_prefix(stream, 6) == b"abcdef"
    assert stream.requested == [6, 3]


async def test_read_prefix_returns_short_bodies_whole():
    stream = ChunkedStream([b"ok"])

    assert await read_prefix(stream, 100) == b"ok"


async def test_large_response_is_not_buffered(receiver, registry, engine, monkeypatch):
    monkeypatch.setattr(settings, "webhook_response_max_chars", 8)
    url = receiver.plan("/big", 200)
    sub = registry.add(make_subscription(url, max_retries=1))
    reads: list[int] = []
    original = delivery_module.read_prefix

    async def recording_read_prefix(stream, limit):
        reads.append(limit)
        return await original(stream, limit)

    monkeypatch.setattr(delivery_module, "read_prefix", recording_read_prefix)

    result = await engine.deliver(sub, EVENT, _envelope())

    assert result.response == "status=2"
    assert reads == [32]
