"""
Tests for the dispatcher: retry budget, dead-lettering, timeouts, state
machine and channel isolation.
"""

import threading

import pytest

from skin_monitor.dispatcher import (
    Delivery,
    Dispatcher,
    InvalidTransition,
    MessageState,
)
from skin_monitor.models import Channel, NotificationMessage
from skin_monitor.notifier import DeliveryResult
from skin_monitor.ratelimit import TokenBucket

S = MessageState


def _message(channel=Channel.MOBILE_PUSH, sub="phone", key="key-1"):
    return NotificationMessage(
        subscription_id=sub,
        channel=channel,
        endpoint="endpoint",
        payload={"title": "t", "body": "b", "data": {}},
        idempotency_key=key,
    )


class DeadLetters:
    def __init__(self):
        self.records = []

    def __call__(self, message, attempts, reason):
        self.records.append((message, attempts, reason))


@pytest.fixture
def dead_letters():
    return DeadLetters()


@pytest.fixture
def make_dispatcher(dead_letters, clock):
    created = []

    def _make(gateways, **kwargs):
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("timeout", 2.0)
        kwargs.setdefault("sleep", clock.sleep)
        dispatcher = Dispatcher({gw.channel: gw for gw in gateways}, dead_letters, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for d in created:
        d.shutdown(wait=True)


class TestDeliveryOutcomes:
    """Retry budget and terminal states."""

    def test_delivered_on_first_attempt(self, make_dispatcher, fake_gateway, dead_letters, clock):
        """Test a message delivered on its first attempt."""
        gw = fake_gateway()
        delivery = make_dispatcher([gw]).deliver(_message())

        assert delivery.state is S.DELIVERED
        assert delivery.attempts == 1
        assert delivery.history == [S.PENDING, S.SENDING, S.DELIVERED]
        assert gw.send_count == 1
        assert clock.sleeps == []
        assert dead_letters.records == []

    def test_always_failing_gateway_is_dead_lettered_once(self, make_dispatcher, fake_gateway, dead_letters):
        """Test the retry budget and a single dead letter."""
        gw = fake_gateway(default=DeliveryResult.failed("InvalidRegistration"))
        delivery = make_dispatcher([gw], max_retries=3).deliver(_message())

        assert gw.send_count == 4
        assert delivery.state is S.FAILED
        assert delivery.attempts == 4
        assert delivery.last_error == "InvalidRegistration"
        assert len(dead_letters.records) == 1
        message, attempts, reason = dead_letters.records[0]
        assert message.idempotency_key == "key-1"
        assert attempts == 4
        assert reason == "InvalidRegistration"

    def test_zero_retries_means_single_attempt(self, make_dispatcher, fake_gateway, dead_letters):
        """Test that zero retries means exactly one attempt."""
        gw = fake_gateway(default=DeliveryResult.failed("down"))
        delivery = make_dispatcher([gw], max_retries=0).deliver(_message())

        assert gw.send_count == 1
        assert delivery.history == [S.PENDING, S.SENDING, S.FAILED]
        assert len(dead_letters.records) == 1

    def test_recovers_after_transient_failure(self, make_dispatcher, fake_gateway, dead_letters):
        """Test delivery after two transient failures."""
        gw = fake_gateway(outcomes=[DeliveryResult.failed("503"), RuntimeError("connection reset")])
        delivery = make_dispatcher([gw]).deliver(_message())

        assert delivery.state is S.DELIVERED
        assert delivery.attempts == 3
        assert delivery.history == [
            S.PENDING, S.SENDING, S.RETRYING, S.SENDING, S.RETRYING, S.SENDING, S.DELIVERED,
        ]
        assert dead_letters.records == []

    def test_backoff_is_exponential(self, make_dispatcher, fake_gateway, clock):
        """Test that backoff doubles between attempts."""
        gw = fake_gateway(default=DeliveryResult.failed("down"))
        make_dispatcher([gw], max_retries=3, backoff_base=1.0, backoff_max=60.0).deliver(_message())

        assert clock.sleeps == [1.0, 2.0, 4.0]

    def test_backoff_is_capped(self, make_dispatcher, fake_gateway, clock):
        """Test that backoff never exceeds its maximum."""
        gw = fake_gateway(default=DeliveryResult.failed("down"))
        make_dispatcher([gw], max_retries=4, backoff_base=2.0, backoff_max=5.0).deliver(_message())

        assert clock.sleeps == [2.0, 4.0, 5.0, 5.0]

    def test_timed_out_send_counts_as_failed_attempt(self, make_dispatcher, fake_gateway, dead_letters):
        """Test that a send exceeding the timeout fails the attempt."""
        gw = fake_gateway(delay=0.5)
        delivery = make_dispatcher([gw], max_retries=0, timeout=0.05).deliver(_message())

        assert delivery.state is S.FAILED
        assert "timed out" in delivery.last_error
        assert len(dead_letters.records) == 1


class TestStateMachine:
    """Allowed transitions."""

    def test_terminal_states_cannot_be_left(self):
        """Test that a delivered message cannot be sent again."""
        delivery = Delivery(_message())
        delivery.transition(S.SENDING)
        delivery.transition(S.DELIVERED)

        assert delivery.terminal
        with pytest.raises(InvalidTransition):
            delivery.transition(S.SENDING)

    def test_pending_cannot_jump_to_delivered(self):
        """Test that a pending message must be sent first."""
        with pytest.raises(InvalidTransition):
            Delivery(_message()).transition(S.DELIVERED)

    def test_retrying_only_goes_back_to_sending(self):
        """Test that retrying can only lead back to sending."""
        delivery = Delivery(_message())
        delivery.transition(S.SENDING)
        delivery.transition(S.RETRYING)

        with pytest.raises(InvalidTransition):
            delivery.transition(S.FAILED)


class TestChannelIsolation:
    """Lanes run independently."""

    def test_blocked_channel_does_not_stall_the_other(self, make_dispatcher, fake_gateway):
        """Test that a stuck channel does not hold up the other."""
        release = threading.Event()
        mobile = fake_gateway(Channel.MOBILE_PUSH, block=release)
        web = fake_gateway(Channel.WEB_PUSH)
        dispatcher = make_dispatcher([mobile, web], timeout=5.0, workers=1)

        stuck = dispatcher.submit(_message(Channel.MOBILE_PUSH, key="m"))
        other = dispatcher.submit(_message(Channel.WEB_PUSH, sub="browser", key="w"))

        try:
            assert other.result(timeout=2).state is S.DELIVERED
            assert not stuck.done()
        finally:
            release.set()
        assert stuck.result(timeout=5).state is S.DELIVERED

    def test_rate_limit_holds_back_only_its_own_channel(self, make_dispatcher, fake_gateway, clock):
        """Test that a channel's token bucket throttles only that channel."""
        release = threading.Event()
        waits = []

        def _wait_for_token(seconds):
            waits.append(seconds)
            release.wait(5)
            clock.advance(seconds)

        mobile = fake_gateway(Channel.MOBILE_PUSH)
        web = fake_gateway(Channel.WEB_PUSH)
        bucket = TokenBucket(rate=1.0, capacity=1, clock=clock, sleep=_wait_for_token)
        dispatcher = make_dispatcher(
            [mobile, web], workers=1, rate_limits={Channel.MOBILE_PUSH: bucket}
        )

        first = dispatcher.submit(_message(Channel.MOBILE_PUSH, key="m1"))
        second = dispatcher.submit(_message(Channel.MOBILE_PUSH, key="m2"))
        web_futures = [
            dispatcher.submit(_message(Channel.WEB_PUSH, sub="browser", key=f"w{i}")) for i in range(3)
        ]

        try:
            assert first.result(timeout=2).state is S.DELIVERED
            assert [f.result(timeout=2).state for f in web_futures] == [S.DELIVERED] * 3
            assert web.send_count == 3
            assert mobile.send_count == 1
            assert not second.done()
        finally:
            release.set()

        delivery = second.result(timeout=5)
        assert delivery.state is S.DELIVERED
        assert delivery.attempts == 1
        assert waits == [1.0]

    def test_submit_to_unregistered_channel_fails(self, make_dispatcher, fake_gateway):
        """Test submitting to a channel without a gateway."""
        dispatcher = make_dispatcher([fake_gateway(Channel.MOBILE_PUSH)])

        with pytest.raises(ValueError):
            dispatcher.submit(_message(Channel.WEB_PUSH))

    def test_shutdown_closes_gateways(self, dead_letters, fake_gateway):
        """Test that shutdown closes every gateway."""
        gw = fake_gateway()
        dispatcher = Dispatcher({gw.channel: gw}, dead_letters)

        dispatcher.shutdown()

        assert gw.closed
