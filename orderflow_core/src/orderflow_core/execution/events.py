"""Lifecycle events and the per-order Event Bus.

Every worker transition is published as one event on the order's channel
(``updates:<order_id>``). Events are transient: there is no persistence and
no replay, so a subscriber only sees what is published while it listens.

Event Flow:
    SwapWorker -> EventBus.publish(order_id, event)
    EventBus -> Subscription (one per WebSocket) -> OrderStatusRelay -> client

Design Decisions:
- Events are a closed tagged union keyed on ``status``
- Flat JSON on the wire: {"status": "...", ...state-specific fields}
- Publish is fire-and-forget; transport faults never reach the worker
- A subscription is a channel read in a loop, closed exactly once
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Annotated, Final, Literal, Protocol, Union, runtime_checkable

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orderflow_core.execution.orders import OrderStatus

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

log = structlog.get_logger()


# ==============================================================================
# Constants
# ==============================================================================
DEFAULT_CHANNEL_PREFIX: Final[str] = "updates"
DEFAULT_PUBLISH_ATTEMPTS: Final[int] = 3
DEFAULT_POLL_TIMEOUT: Final[float] = 1.0  # seconds between pub/sub reads


# ==============================================================================
# Lifecycle Events
# ==============================================================================
class LifecycleEvent(BaseModel):
    """Base class for order lifecycle events."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def encode(self) -> str:
        """Serialise to the flat JSON frame sent to subscribers."""
        return self.model_dump_json(by_alias=True)


class RoutingEvent(LifecycleEvent):
    """Worker started fetching quotes."""

    status: Literal["ROUTING"] = OrderStatus.ROUTING.value


class BuildingTxEvent(LifecycleEvent):
    """Best venue selected, transaction being built."""

    status: Literal["BUILDING_TX"] = OrderStatus.BUILDING_TX.value
    venue: str


class SubmittingEvent(LifecycleEvent):
    """Transaction submitted to the venue."""

    status: Literal["SUBMITTING"] = OrderStatus.SUBMITTING.value


class ConfirmedEvent(LifecycleEvent):
    """Swap settled."""

    status: Literal["CONFIRMED"] = OrderStatus.CONFIRMED.value
    settlement_id: str
    venue: str


class FailedEvent(LifecycleEvent):
    """Processing attempt failed."""

    status: Literal["FAILED"] = OrderStatus.FAILED.value
    error: str


OrderEvent = Annotated[
    Union[RoutingEvent, BuildingTxEvent, SubmittingEvent, ConfirmedEvent, FailedEvent],
    Field(discriminator="status"),
]

_EVENT_ADAPTER: Final[TypeAdapter[OrderEvent]] = TypeAdapter(OrderEvent)


def parse_event(raw: str | bytes) -> OrderEvent:
    """Parse a wire frame back into its event variant.

    Raises:
        pydantic.ValidationError: If the frame is not a known event.
    """
    return _EVENT_ADAPTER.validate_json(raw)


def channel_for(order_id: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    """Channel name for an order's lifecycle events."""
    return f"{prefix}:{order_id}"


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class SubscriptionError(Exception):
    """Raised when the transport beneath a subscription fails."""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"Subscription to {channel} failed: {reason}")


# ==============================================================================
# Event Bus Protocol
# ==============================================================================
@runtime_checkable
class Subscription(Protocol):
    """Handle yielding events delivered to one channel until closed.

    Iteration ends when the subscription is closed or the transport ends;
    transport failures raise SubscriptionError.
    """

    order_id: str
    channel: str

    @property
    def closed(self) -> bool:
        """Whether close() has run."""
        ...

    def __aiter__(self) -> AsyncIterator[OrderEvent]:
        ...

    async def __anext__(self) -> OrderEvent:
        ...

    async def close(self) -> None:
        """Unsubscribe then release. Safe to call more than once."""
        ...


@runtime_checkable
class EventBus(Protocol):
    """Publish/subscribe keyed by order id."""

    async def publish(self, order_id: str, event: LifecycleEvent) -> int:
        """Deliver ``event`` to current subscribers; returns how many received it."""
        ...

    async def subscribe(self, order_id: str) -> Subscription:
        """Register interest in an order's events."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


# ==============================================================================
# Memory Event Bus (Development/Testing)
# ==============================================================================
_END: Final[object] = object()


class MemorySubscription:
    """In-process subscription backed by an asyncio queue of wire frames."""

    def __init__(self, bus: MemoryEventBus, order_id: str, channel: str) -> None:
        self.order_id = order_id
        self.channel = channel
        self._bus = bus
        self._frames: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._error: SubscriptionError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, frame: str) -> None:
        if not self._closed:
            self._frames.put_nowait(frame)

    def fail(self, reason: str) -> None:
        """Simulate the transport dropping beneath this subscription."""
        self._error = SubscriptionError(self.channel, reason)
        self._frames.put_nowait(_END)

    def __aiter__(self) -> MemorySubscription:
        return self

    async def __anext__(self) -> OrderEvent:
        while True:
            if self._closed:
                raise StopAsyncIteration
            frame = await self._frames.get()
            if frame is _END:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            try:
                return parse_event(frame)  # type: ignore[arg-type]
            except ValidationError:
                log.warning("Dropping malformed event frame", channel=self.channel)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        self._frames.put_nowait(_END)


class MemoryEventBus:
    """In-memory event bus for development and testing.

    WARNING: Delivery is process-local. Use RedisEventBus when the worker
    and the API run as separate processes.
    """

    def __init__(self, channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        self.channel_prefix = channel_prefix
        self._channels: dict[str, list[MemorySubscription]] = {}
        self.published: list[tuple[str, LifecycleEvent]] = []

    def subscriber_count(self, order_id: str) -> int:
        """Number of live subscriptions on an order's channel."""
        return len(self._channels.get(channel_for(order_id, self.channel_prefix), []))

    async def publish(self, order_id: str, event: LifecycleEvent) -> int:
        channel = channel_for(order_id, self.channel_prefix)
        self.published.append((order_id, event))
        subscribers = list(self._channels.get(channel, []))
        frame = event.encode()
        for subscription in subscribers:
            subscription.deliver(frame)
        log.debug("Event published", channel=channel, status=event.status, receivers=len(subscribers))
        return len(subscribers)

    async def subscribe(self, order_id: str) -> MemorySubscription:
        channel = channel_for(order_id, self.channel_prefix)
        subscription = MemorySubscription(self, order_id, channel)
        self._channels.setdefault(channel, []).append(subscription)
        log.debug("Subscribed", channel=channel)
        return subscription

    def unsubscribe(self, subscription: MemorySubscription) -> None:
        subscribers = self._channels.get(subscription.channel)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            # Channels only exist while referenced
            del self._channels[subscription.channel]

    async def close(self) -> None:
        """Drop the transport: every live subscription ends with an error."""
        for subscribers in list(self._channels.values()):
            for subscription in list(subscribers):
                subscription.fail("event bus closed")
        self._channels.clear()


# ==============================================================================
# Redis Event Bus
# ==============================================================================
class RedisSubscription:
    """Dedicated redis pub/sub connection for one channel."""

    def __init__(
        self,
        order_id: str,
        channel: str,
        pubsub: aioredis.client.PubSub,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        self.order_id = order_id
        self.channel = channel
        self._pubsub = pubsub
        self._poll_timeout = poll_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> RedisSubscription:
        return self

    async def __anext__(self) -> OrderEvent:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_timeout,
                )
            except RedisError as exc:
                raise SubscriptionError(self.channel, str(exc)) from exc

            if message is None or message.get("type") != "message":
                continue

            try:
                return parse_event(message["data"])
            except ValidationError:
                log.warning("Dropping malformed event frame", channel=self.channel)

        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        except RedisError as exc:
            log.warning("Unsubscribe failed", channel=self.channel, error=str(exc))
        finally:
            await self._pubsub.aclose()
        log.debug("Subscription released", channel=self.channel)


class RedisEventBus:
    """Redis pub/sub event bus.

    The publisher shares the process-wide connection pool; each subscription
    takes its own pub/sub connection for the lifetime of one WebSocket.

    Attributes:
        redis_url: Redis connection URL.
        client: redis.asyncio client instance.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        publish_attempts: int = DEFAULT_PUBLISH_ATTEMPTS,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        client: aioredis.Redis | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.publish_attempts = publish_attempts
        self.poll_timeout = poll_timeout
        self.client: aioredis.Redis = client or aioredis.from_url(redis_url, decode_responses=True)

    async def publish(self, order_id: str, event: LifecycleEvent) -> int:
        channel = channel_for(order_id, self.channel_prefix)
        frame = event.encode()

        @retry(
            stop=stop_after_attempt(self.publish_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            before_sleep=lambda rs: log.warning(
                "Retrying event publish",
                attempt=rs.attempt_number,
                channel=channel,
            ),
            reraise=True,
        )
        async def _publish() -> int:
            return await self.client.publish(channel, frame)

        try:
            receivers = int(await _publish())
        except RedisError as exc:
            # Notification faults must never fail the order
            log.error("Event publish failed", channel=channel, status=event.status, error=str(exc))
            return 0

        log.debug("Event published", channel=channel, status=event.status, receivers=receivers)
        return receivers

    async def subscribe(self, order_id: str) -> RedisSubscription:
        channel = channel_for(order_id, self.channel_prefix)
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            await pubsub.aclose()
            raise SubscriptionError(channel, str(exc)) from exc
        log.debug("Subscribed", channel=channel)
        return RedisSubscription(order_id, channel, pubsub, poll_timeout=self.poll_timeout)

    async def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
