from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx
import pytest

from brandtrust.core.config import Settings
from brandtrust.services.push import (
    GatewayPushSender,
    LoggingPushSender,
    PushDeliveryError,
    PushMessage,
    build_push_sender,
)
from brandtrust.services.repository import PushSubscriptionRecord

SUBSCRIPTION = PushSubscriptionRecord(endpoint="https://push.example/abc", p256dh="key", auth="secret")
MESSAGE = PushMessage(title="Brand score update", body="Labor dropped", url="/brands/acme", data={"brand_id": "acme"})


def _send(handler) -> None:
    async def run() -> None:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as client:
            sender = GatewayPushSender("https://gateway.example/send", token="t0k", client=client)
            await sender.send(SUBSCRIPTION, MESSAGE)

    asyncio.run(run())


def test_gateway_sender_posts_subscription_and_notification() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(status_code=201, request=request)

    _send(handler)

    assert captured["auth"] == "Bearer t0k"
    assert captured["body"]["subscription"] == {
        "endpoint": "https://push.example/abc",
        "keys": {"p256dh": "key", "auth": "secret"},
    }
    assert captured["body"]["notification"]["url"] == "/brands/acme"


@pytest.mark.parametrize("status_code", [404, 410])
def test_gone_subscription_is_reported_as_expired(status_code: int) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=status_code, request=request)

    with pytest.raises(PushDeliveryError) as exc_info:
        _send(handler)

    assert exc_info.value.expired is True


def test_server_error_is_not_expired() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, request=request)

    with pytest.raises(PushDeliveryError) as exc_info:
        _send(handler)

    assert exc_info.value.expired is False
    assert exc_info.value.status_code == 503


def test_transport_error_is_wrapped() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PushDeliveryError) as exc_info:
        _send(handler)

    assert exc_info.value.status_code is None


def test_build_push_sender_without_gateway_logs_instead(caplog: pytest.LogCaptureFixture) -> None:
    sender = build_push_sender(Settings(push_gateway_url=None, otel_enabled=False))
    assert isinstance(sender, LoggingPushSender)

    with caplog.at_level(logging.INFO, logger="brandtrust.services.push"):
        asyncio.run(sender.send(SUBSCRIPTION, MESSAGE))
        asyncio.run(sender.send(SUBSCRIPTION, MESSAGE))

    assert [record.getMessage() for record in caplog.records].count(
        f"push gateway not configured; dropping push to https://push.example/abc: {MESSAGE.title}"
    ) == 2
    assert not hasattr(sender, "sent")

    gateway = build_push_sender(Settings(push_gateway_url="https://gateway.example/send", otel_enabled=False))
    assert isinstance(gateway, GatewayPushSender)
