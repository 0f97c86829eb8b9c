"""Push delivery gateways.

One gateway per channel, all with the same ``send(endpoint, payload, timeout)``
signature. A gateway makes exactly one attempt; retries, rate limiting and
dead-lettering belong to the dispatcher.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

from .models import Channel
from .utils import get_http_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(True)

    @classmethod
    def failed(cls, reason: str) -> "DeliveryResult":
        return cls(False, reason)


class Gateway(Protocol):
    channel: Channel

    def send(self, endpoint: str, payload: dict, timeout: Optional[float] = None) -> DeliveryResult:
        ...


class FcmGateway:
    """Mobile push through the FCM HTTP send endpoint."""

    channel = Channel.MOBILE_PUSH

    def __init__(
        self,
        server_key: str,
        endpoint: str = "https://fcm.googleapis.com/fcm/send",
        session: Optional[requests.Session] = None,
    ):
        self.server_key = server_key
        self.endpoint = endpoint
        self.session = session or get_http_session()

    def _build_body(self, token: str, payload: dict) -> dict:
        body = {
            "to": token,
            "priority": "high",
            "notification": {
                "title": payload.get("title"),
                "body": payload.get("body"),
            },
        }
        if payload.get("data"):
            body["data"] = payload["data"]
        return body

    def send(self, endpoint: str, payload: dict, timeout: Optional[float] = None) -> DeliveryResult:
        try:
            resp = self.session.post(
                self.endpoint,
                json=self._build_body(endpoint, payload),
                headers={"Authorization": f"key={self.server_key}"},
                timeout=timeout,
            )
        except requests.RequestException as e:
            return DeliveryResult.failed(f"request error: {e}")

        if resp.status_code != 200:
            return DeliveryResult.failed(f"HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            return DeliveryResult.ok()
        logger.debug("FCM response: %s", data)
        if int(data.get("failure") or 0) > 0:
            errors = [r.get("error") for r in data.get("results") or [] if r.get("error")]
            return DeliveryResult.failed(", ".join(errors) or "FCM reported a failure")
        return DeliveryResult.ok()

    def close(self) -> None:
        self.session.close()


class WebPushGateway:
    """
    Browser push via VAPID-signed Web Push.

    The subscription endpoint is the browser's PushSubscription serialized as
    JSON (``{"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}``).
    """

    channel = Channel.WEB_PUSH

    def __init__(self, vapid_private_key: str, claim_subject: str, ttl: int = 86400):
        self.vapid_private_key = vapid_private_key
        self.claim_subject = claim_subject
        self.ttl = ttl

    def send(self, endpoint: str, payload: dict, timeout: Optional[float] = None) -> DeliveryResult:
        try:
            subscription_info = json.loads(endpoint)
        except ValueError:
            return DeliveryResult.failed("subscription info is not valid JSON")

        try:
            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload, ensure_ascii=False),
                vapid_private_key=self.vapid_private_key,
                # webpush() adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self.claim_subject},
                ttl=self.ttl,
                timeout=timeout,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            logger.debug("Web push response body: %s", getattr(e.response, "text", None))
            return DeliveryResult.failed(f"web push rejected (HTTP {status}): {e}")
        except requests.RequestException as e:
            return DeliveryResult.failed(f"request error: {e}")
        return DeliveryResult.ok()

    def close(self) -> None:
        pass


__all__ = ["DeliveryResult", "Gateway", "FcmGateway", "WebPushGateway"]
