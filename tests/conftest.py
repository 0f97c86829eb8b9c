"""
Shared pytest fixtures for the skin monitor tests.

Fixtures give each test a fresh SQLite file, scripted fake gateways and
controllable clocks, so nothing touches the network or sleeps for real.
"""

import threading
import time
from typing import Callable, List, Optional

import pytest

from skin_monitor.db import Database
from skin_monitor.models import Channel, Exterior, Item, Subscription, SubscriptionFilter
from skin_monitor.notifier import DeliveryResult


class FakeGateway:
    """
    Scripted gateway.

    ``outcomes`` are consumed one per send (a DeliveryResult or an exception
    to raise); once exhausted every send returns ``default``.
    """

    def __init__(
        self,
        channel: Channel = Channel.MOBILE_PUSH,
        outcomes: Optional[list] = None,
        default: DeliveryResult = DeliveryResult.ok(),
        delay: float = 0.0,
        block: Optional[threading.Event] = None,
    ):
        self.channel = channel
        self.outcomes = list(outcomes or [])
        self.default = default
        self.delay = delay
        self.block = block
        self.calls: List[tuple] = []
        self.closed = False
        self._lock = threading.Lock()

    def send(self, endpoint: str, payload: dict, timeout: Optional[float] = None) -> DeliveryResult:
        with self._lock:
            self.calls.append((endpoint, payload))
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if self.block is not None:
            self.block.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def send_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock; ``sleep`` advances it instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def db(tmp_path) -> Database:
    """Fresh, initialised SQLite database per test."""
    database = Database(str(tmp_path / "monitor.db"))
    database.init_db()
    return database


@pytest.fixture
def fake_gateway() -> Callable[..., FakeGateway]:
    """Factory for scripted gateways."""
    return FakeGateway


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_item() -> Callable[..., Item]:
    """Factory for items; defaults describe an AK-47 | Rifle (Field-Tested) for 1000."""

    def _make(order_id: int = 1, **overrides) -> Item:
        fields = dict(
            order_id=order_id,
            name="AK-47",
            kind="Rifle",
            exterior=Exterior.FT,
            price=1000,
            has_sold=False,
            is_stattrak=False,
        )
        fields.update(overrides)
        return Item(**fields)

    return _make


@pytest.fixture
def ak47_record() -> dict:
    """Raw fetcher record for the AK-47 scenario listing."""
    return {
        "order_id": 1,
        "name": "AK-47",
        "kind": "Rifle",
        "exterior": "FT",
        "price": 1000,
        "has_sold": False,
        "is_stattrak": False,
    }


@pytest.fixture
def phone_subscription() -> Subscription:
    """Mobile subscription with no filter."""
    return Subscription(id="phone", channel=Channel.MOBILE_PUSH, endpoint="fcm-token-1")


@pytest.fixture
def browser_subscription() -> Subscription:
    """Web push subscription only interested in items up to 950."""
    return Subscription(
        id="browser",
        channel=Channel.WEB_PUSH,
        endpoint='{"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}}',
        filter=SubscriptionFilter(max_price=950),
    )
