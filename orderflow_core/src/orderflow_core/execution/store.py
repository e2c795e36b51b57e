"""Order persistence layer for OrderFlow.

Provides abstraction over storage backends (Redis, in-memory) for the
durable Order record. The store is the only place the lifecycle transition
table is enforced, so no writer can skip or reverse a state.

Design Decisions:
- Protocol-based interface for flexibility
- Optimistic concurrency (WATCH/MULTI/EXEC) for status transitions
- Orders serialised as camelCase JSON, one key per order
- Fail-fast on production (Redis required), graceful fallback in dev
"""

from __future__ import annotations

import threading
from typing import Final, Protocol, runtime_checkable

import redis
import structlog

from orderflow_core.execution.orders import (
    Order,
    OrderNotFoundError,
    OrderStatus,
)

log = structlog.get_logger()

DEFAULT_KEY_PREFIX: Final[str] = "orders"
MAX_TRANSITION_ATTEMPTS: Final[int] = 5


# ==============================================================================
# Order Store Protocol
# ==============================================================================
@runtime_checkable
class OrderStore(Protocol):
    """Protocol for order persistence backends.

    Implementations must support:
    - Insert of new PENDING orders
    - Lookup by id
    - Validated status transitions written atomically with settlement fields
    """

    def insert(self, order: Order) -> Order:
        """Persist a new order."""
        ...

    def get(self, order_id: str) -> Order | None:
        """Load an order by id."""
        ...

    def transition(
        self,
        order_id: str,
        status: OrderStatus,
        *,
        settlement_id: str | None = None,
        venue: str | None = None,
    ) -> Order:
        """Move an order to ``status`` in a single durable write."""
        ...

    def health_check(self) -> bool:
        """Check backend health."""
        ...


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class StoreConnectionError(Exception):
    """Raised when store connection fails."""


class TransactionError(Exception):
    """Raised when atomic transaction fails."""


class DuplicateOrderError(Exception):
    """Raised when inserting an order id that already exists."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order already exists: {order_id}")


# ==============================================================================
# Redis Store
# ==============================================================================
class RedisOrderStore:
    """Redis-backed order persistence with optimistic transactions.

    Attributes:
        redis_url: Redis connection URL.
        key_prefix: Namespace for order keys.
        client: Redis client instance.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = DEFAULT_KEY_PREFIX,
        connection_timeout: float = 5.0,
        socket_timeout: float = 5.0,
        client: redis.Redis | None = None,
    ) -> None:
        """Initialize Redis connection.

        Args:
            redis_url: Redis connection URL.
            key_prefix: Namespace for order keys.
            connection_timeout: Connection timeout in seconds.
            socket_timeout: Socket timeout in seconds.
            client: Pre-built client; ``redis_url`` and the timeouts are then unused.

        Raises:
            StoreConnectionError: If Redis is unreachable.
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix

        try:
            self.client: redis.Redis[str] = client or redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=connection_timeout,
                socket_timeout=socket_timeout,
            )
            # Verify connection
            self.client.ping()
            log.info("Redis connection established", url=redis_url)
        except redis.ConnectionError as exc:
            raise StoreConnectionError(
                f"Cannot connect to Redis at {redis_url}: {exc}"
            ) from exc

    def _key(self, order_id: str) -> str:
        return f"{self.key_prefix}:{order_id}"

    def insert(self, order: Order) -> Order:
        """Persist a new order; refuses to overwrite an existing id."""
        created = self.client.set(self._key(order.id), order.model_dump_json(by_alias=True), nx=True)
        if not created:
            raise DuplicateOrderError(order.id)
        log.info("Order inserted", order_id=order.id, status=order.status.value)
        return order

    def get(self, order_id: str) -> Order | None:
        """Load and deserialize an order."""
        data = self.client.get(self._key(order_id))
        if data is None:
            return None
        try:
            return Order.model_validate_json(data)
        except Exception as e:
            log.error("Failed to deserialize order", order_id=order_id, error=str(e))
            return None

    def transition(
        self,
        order_id: str,
        status: OrderStatus,
        *,
        settlement_id: str | None = None,
        venue: str | None = None,
    ) -> Order:
        """Apply a validated transition using WATCH/MULTI/EXEC.

        Raises:
            OrderNotFoundError: If the order does not exist.
            InvalidOrderStateError: If the transition is not allowed.
            TransactionError: If concurrent writers keep invalidating the watch.
        """
        key = self._key(order_id)
        with self.client.pipeline(transaction=True) as pipe:
            for _ in range(MAX_TRANSITION_ATTEMPTS):
                try:
                    pipe.watch(key)
                    data = pipe.get(key)
                    if data is None:
                        raise OrderNotFoundError(order_id)

                    updated = Order.model_validate_json(data).transition(
                        status,
                        settlement_id=settlement_id,
                        venue=venue,
                    )

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(by_alias=True))
                    pipe.execute()
                    return updated
                except redis.WatchError:
                    log.debug("Concurrent order write, retrying", order_id=order_id)
                    continue
                finally:
                    pipe.reset()

        raise TransactionError(
            f"Transaction aborted due to concurrent modification of order {order_id}"
        )

    def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self.client.close()


# ==============================================================================
# Memory Store (Development/Testing)
# ==============================================================================
class MemoryOrderStore:
    """In-memory store for development and testing.

    WARNING: Data is lost on restart. Do not use in production.

    Features:
    - Thread-safe operations (the API test client runs in its own thread)
    - Same transition rules as the Redis store
    """

    def __init__(self) -> None:
        """Initialize in-memory store."""
        self._orders: dict[str, str] = {}
        self._lock = threading.Lock()
        self.history: list[tuple[str, OrderStatus]] = []
        log.warning(
            "MemoryOrderStore initialized - DATA IS VOLATILE",
            hint="Use RedisOrderStore in production",
        )

    def insert(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise DuplicateOrderError(order.id)
            self._orders[order.id] = order.model_dump_json(by_alias=True)
            self.history.append((order.id, order.status))
        return order

    def get(self, order_id: str) -> Order | None:
        data = self._orders.get(order_id)
        if data is None:
            return None
        return Order.model_validate_json(data)

    def transition(
        self,
        order_id: str,
        status: OrderStatus,
        *,
        settlement_id: str | None = None,
        venue: str | None = None,
    ) -> Order:
        with self._lock:
            data = self._orders.get(order_id)
            if data is None:
                raise OrderNotFoundError(order_id)
            updated = Order.model_validate_json(data).transition(
                status,
                settlement_id=settlement_id,
                venue=venue,
            )
            self._orders[order_id] = updated.model_dump_json(by_alias=True)
            self.history.append((order_id, status))
        return updated

    def statuses(self, order_id: str) -> list[OrderStatus]:
        """Every status written for an order, in write order."""
        return [status for oid, status in self.history if oid == order_id]

    def health_check(self) -> bool:
        """Always healthy for memory store."""
        return True

    def clear(self) -> None:
        """Clear all data (useful for tests)."""
        with self._lock:
            self._orders.clear()
            self.history.clear()

    def __len__(self) -> int:
        return len(self._orders)


# ==============================================================================
# Factory Function
# ==============================================================================
def create_store(
    redis_url: str = "redis://localhost:6379/0",
    use_redis: bool = True,
    fallback_to_memory: bool = True,
) -> RedisOrderStore | MemoryOrderStore:
    """Create an order store instance.

    Args:
        redis_url: Redis connection URL.
        use_redis: Whether to attempt Redis connection.
        fallback_to_memory: If True, use MemoryOrderStore when Redis unavailable.

    Returns:
        RedisOrderStore or MemoryOrderStore instance.

    Raises:
        StoreConnectionError: If Redis required but unavailable.
    """
    if use_redis:
        try:
            return RedisOrderStore(redis_url=redis_url)
        except StoreConnectionError:
            if not fallback_to_memory:
                raise
            log.warning(
                "Redis unavailable, using MemoryOrderStore",
                url=redis_url,
            )

    return MemoryOrderStore()
