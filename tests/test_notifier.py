"""
Tests for the push gateways. No request leaves the process.
"""

import json

import pytest
import requests
from pywebpush import WebPushException

from skin_monitor import notifier
from skin_monitor.notifier import FcmGateway, WebPushGateway

PAYLOAD = {"title": "AK-47 の価格が変更されました", "body": "1,000 円から 900 円になりました。", "data": {"order_id": "1"}}


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []
        self.closed = False

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


class TestFcmGateway:
    """Mobile push over the FCM send endpoint."""

    def test_successful_send(self):
        """Test a successful send."""
        session = FakeSession(FakeResponse(200, {"success": 1, "failure": 0}))
        gateway = FcmGateway("server-key", "https://fcm.example/send", session=session)

        result = gateway.send("token-1", PAYLOAD, timeout=5)

        assert result.delivered
        [(url, kwargs)] = session.posts
        assert url == "https://fcm.example/send"
        assert kwargs["headers"] == {"Authorization": "key=server-key"}
        assert kwargs["timeout"] == 5
        assert kwargs["json"] == {
            "to": "token-1",
            "priority": "high",
            "notification": {"title": PAYLOAD["title"], "body": PAYLOAD["body"]},
            "data": {"order_id": "1"},
        }

    def test_non_200_is_a_failure(self):
        """Test that a non-200 response fails the send."""
        gateway = FcmGateway("k", session=FakeSession(FakeResponse(401)))

        result = gateway.send("token-1", PAYLOAD)

        assert not result.delivered
        assert result.reason == "HTTP 401"

    def test_reported_failure_carries_fcm_error(self):
        """Test that a reported FCM failure carries its error code."""
        body = {"success": 0, "failure": 1, "results": [{"error": "NotRegistered"}]}
        gateway = FcmGateway("k", session=FakeSession(FakeResponse(200, body)))

        result = gateway.send("token-1", PAYLOAD)

        assert not result.delivered
        assert result.reason == "NotRegistered"

    def test_network_error_is_a_failure(self):
        """Test that a network error fails the send."""
        session = FakeSession(error=requests.ConnectionError("refused"))
        gateway = FcmGateway("k", session=session)

        result = gateway.send("token-1", PAYLOAD)

        assert not result.delivered
        assert "refused" in result.reason

    def test_close_closes_session(self):
        """Test that closing the gateway closes its session."""
        session = FakeSession()
        FcmGateway("k", session=session).close()

        assert session.closed


class TestWebPushGateway:
    """Browser push through pywebpush."""

    SUBSCRIPTION = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}}

    def test_successful_send(self, monkeypatch):
        """Test a successful send."""
        calls = []
        monkeypatch.setattr(notifier, "webpush", lambda **kwargs: calls.append(kwargs))
        gateway = WebPushGateway("vapid-key", "mailto:ops@example.com", ttl=60)

        result = gateway.send(json.dumps(self.SUBSCRIPTION), PAYLOAD, timeout=3)

        assert result.delivered
        [kwargs] = calls
        assert kwargs["subscription_info"] == self.SUBSCRIPTION
        assert json.loads(kwargs["data"]) == PAYLOAD
        assert kwargs["vapid_private_key"] == "vapid-key"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert kwargs["ttl"] == 60
        assert kwargs["timeout"] == 3

    def test_rejected_push_is_a_failure(self, monkeypatch):
        """Test that a rejected push fails the send."""
        def _reject(**kwargs):
            raise WebPushException("Push failed: 410 Gone", response=None)

        monkeypatch.setattr(notifier, "webpush", _reject)
        gateway = WebPushGateway("vapid-key", "mailto:ops@example.com")

        result = gateway.send(json.dumps(self.SUBSCRIPTION), PAYLOAD)

        assert not result.delivered
        assert "410 Gone" in result.reason

    @pytest.mark.parametrize("endpoint", ["not json", "{broken"])
    def test_invalid_subscription_info(self, monkeypatch, endpoint):
        """Test subscription info that is not JSON."""
        monkeypatch.setattr(notifier, "webpush", lambda **kwargs: pytest.fail("must not be called"))

        result = WebPushGateway("vapid-key", "mailto:ops@example.com").send(endpoint, PAYLOAD)

        assert not result.delivered
        assert result.reason == "subscription info is not valid JSON"
