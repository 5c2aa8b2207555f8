from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from brandtrust.core.config import Settings, get_settings
from brandtrust.services.repository import PushSubscriptionRecord

logger = logging.getLogger(__name__)

EXPIRED_STATUS_CODES = {404, 410}


class PushDeliveryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def expired(self) -> bool:
        """True when the push service reports the subscription as gone."""
        return self.status_code in EXPIRED_STATUS_CODES


@dataclass(slots=True)
class PushMessage:
    title: str
    body: str
    url: str
    data: dict[str, Any]


class PushSender(Protocol):
    async def send(self, subscription: PushSubscriptionRecord, message: PushMessage) -> None: ...


class GatewayPushSender:
    """Relays web-push messages through an HTTP gateway that owns the VAPID keys."""

    def __init__(
        self,
        gateway_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def send(self, subscription: PushSubscriptionRecord, message: PushMessage) -> None:
        body = {
            "subscription": {
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
            },
            "notification": {
                "title": message.title,
                "body": message.body,
                "url": message.url,
                "data": message.data,
            },
        }
        try:
            if self.client is not None:
                response = await self.client.post(self.gateway_url, json=body, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.gateway_url, json=body, headers=self.headers)
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"push gateway request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise PushDeliveryError(
                f"push gateway returned {response.status_code}",
                status_code=response.status_code,
            )


class LoggingPushSender:
    """Sender used when no gateway is configured; logs each push and keeps nothing."""

    async def send(self, subscription: PushSubscriptionRecord, message: PushMessage) -> None:
        logger.info("push gateway not configured; dropping push to %s: %s", subscription.endpoint, message.title)


def build_push_sender(settings: Settings) -> PushSender:
    if settings.push_gateway_url:
        return GatewayPushSender(
            settings.push_gateway_url,
            token=settings.push_gateway_token,
            timeout_seconds=settings.push_timeout_seconds,
        )
    return LoggingPushSender()


def get_push_sender() -> PushSender:
    return build_push_sender(get_settings())
