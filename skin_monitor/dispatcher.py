"""Deliver notification messages over their channel gateways.

Every channel gets its own lane: a gateway, an optional token bucket and two
bounded thread pools (one running whole deliveries, one running single send
attempts so they can be timed out). A slow or failing channel only ever
occupies its own lane.

Each message follows ``PENDING -> SENDING -> {DELIVERED | RETRYING -> SENDING |
FAILED}``. A message that fails ``max_retries + 1`` attempts is dead-lettered
once and never retried again.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from tenacity import (RetryCallState, Retrying, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from .models import Channel, NotificationMessage
from .notifier import DeliveryResult, Gateway
from .ratelimit import TokenBucket

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


_TRANSITIONS = {
    MessageState.PENDING: {MessageState.SENDING},
    MessageState.SENDING: {MessageState.DELIVERED, MessageState.RETRYING, MessageState.FAILED},
    MessageState.RETRYING: {MessageState.SENDING},
    MessageState.DELIVERED: set(),
    MessageState.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    """Raised on a state change the delivery state machine does not allow."""


class DeliveryError(Exception):
    """One failed send attempt."""


@dataclass
class Delivery:
    """Tracks one message through the delivery state machine."""

    message: NotificationMessage
    state: MessageState = MessageState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    history: List[MessageState] = field(default_factory=lambda: [MessageState.PENDING])

    @property
    def terminal(self) -> bool:
        return self.state in (MessageState.DELIVERED, MessageState.FAILED)

    def transition(self, new_state: MessageState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


DeadLetterSink = Callable[[NotificationMessage, int, str], None]


class _Lane:
    def __init__(self, channel: Channel, gateway: Gateway, bucket: Optional[TokenBucket], workers: int):
        self.channel = channel
        self.gateway = gateway
        self.bucket = bucket
        self.deliveries = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"dispatch-{channel.value}"
        )
        self.attempts = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"send-{channel.value}"
        )

    def shutdown(self, wait: bool) -> None:
        self.deliveries.shutdown(wait=wait)
        self.attempts.shutdown(wait=wait)


class Dispatcher:
    def __init__(
        self,
        gateways: Mapping[Channel, Gateway],
        dead_letter: DeadLetterSink,
        *,
        max_retries: int = 3,
        timeout: float = 10.0,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        workers: int = 4,
        rate_limits: Optional[Mapping[Channel, TokenBucket]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._dead_letter = dead_letter
        self._sleep = sleep
        rate_limits = rate_limits or {}
        self._lanes: Dict[Channel, _Lane] = {
            channel: _Lane(channel, gw, rate_limits.get(channel), workers)
            for channel, gw in gateways.items()
        }

    @property
    def channels(self) -> frozenset:
        return frozenset(self._lanes)

    def submit(self, message: NotificationMessage) -> "Future[Delivery]":
        """Queue a message on its channel lane; returns immediately."""
        lane = self._lanes.get(message.channel)
        if lane is None:
            raise ValueError(f"no gateway registered for channel {message.channel.value}")
        return lane.deliveries.submit(self.deliver, message)

    def submit_all(self, messages: Iterable[NotificationMessage]) -> List["Future[Delivery]"]:
        return [self.submit(m) for m in messages]

    def deliver(self, message: NotificationMessage) -> Delivery:
        """Run the bounded retry loop for one message in the calling thread."""
        lane = self._lanes[message.channel]
        delivery = Delivery(message)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(DeliveryError),
            before_sleep=lambda state: self._before_retry(delivery, state),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._attempt(lane, delivery)
        except DeliveryError as e:
            delivery.last_error = str(e)
            delivery.transition(MessageState.FAILED)
            self._record_dead_letter(delivery)
            return delivery

        delivery.transition(MessageState.DELIVERED)
        logger.info(
            "Delivered %s message to subscription %s (attempts=%d)",
            message.channel.value, message.subscription_id, delivery.attempts,
        )
        return delivery

    def _attempt(self, lane: _Lane, delivery: Delivery) -> None:
        message = delivery.message
        if lane.bucket is not None:
            lane.bucket.acquire()
        delivery.transition(MessageState.SENDING)
        delivery.attempts += 1

        future = lane.attempts.submit(lane.gateway.send, message.endpoint, message.payload, self.timeout)
        try:
            result: DeliveryResult = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise DeliveryError(f"send timed out after {self.timeout}s")
        except Exception as e:
            raise DeliveryError(f"gateway raised {type(e).__name__}: {e}") from e
        if not result.delivered:
            raise DeliveryError(result.reason or "delivery failed")

    def _before_retry(self, delivery: Delivery, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delivery.last_error = str(exc) if exc else None
        delivery.transition(MessageState.RETRYING)
        wait = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Attempt %d/%d to %s subscription %s failed (%s); retrying in %.1fs",
            delivery.attempts, self.max_retries + 1, delivery.message.channel.value,
            delivery.message.subscription_id, delivery.last_error, wait,
        )

    def _record_dead_letter(self, delivery: Delivery) -> None:
        message = delivery.message
        logger.error(
            "Dead-lettered %s message %s to subscription %s after %d attempts: %s",
            message.channel.value, message.idempotency_key[:12], message.subscription_id,
            delivery.attempts, delivery.last_error,
        )
        try:
            self._dead_letter(message, delivery.attempts, delivery.last_error or "")
        except Exception:
            logger.exception("Failed to persist dead letter %s", message.idempotency_key)

    def shutdown(self, wait: bool = True) -> None:
        for lane in self._lanes.values():
            lane.shutdown(wait)
            close = getattr(lane.gateway, "close", None)
            if close is not None:
                close()


__all__ = [
    "Delivery",
    "DeliveryError",
    "Dispatcher",
    "InvalidTransition",
    "MessageState",
]
