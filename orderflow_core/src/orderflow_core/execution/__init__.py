"""Execution Layer for OrderFlow.

This module provides the asynchronous execution pipeline:
- Orders: the durable record and its lifecycle transition table
- Quote Router: simulated venues, concurrent quoting, best venue selection
- Event Bus: per-order publish/subscribe of lifecycle events
- Work Queue: durable job delivery with bounded exponential retry
- Order Store: persistence layer for order state
- Swap Worker: the order state machine tying the above together

Architecture:
    SwapRequest -> Order (PENDING) -> OrderStore + WorkQueue.enqueue(SwapJob)
    WorkQueue -> QueueConsumer -> SwapWorker.process -> JobResult
    SwapWorker -> OrderStore.transition + EventBus.publish (per transition)

Example:
    ```python
    from orderflow_core.execution import (
        MemoryEventBus,
        MemoryOrderStore,
        MemoryWorkQueue,
        Order,
        QueueConsumer,
        QuoteRouter,
        SwapWorker,
    )

    store = MemoryOrderStore()
    bus = MemoryEventBus()
    queue = MemoryWorkQueue()
    worker = SwapWorker(store, bus, QuoteRouter())

    order = store.insert(Order(input_asset="SOL", output_asset="USDC", amount=500))
    await queue.enqueue(order.to_job())
    await QueueConsumer(queue, worker.process).run_once()
    ```
"""

from orderflow_core.execution.events import (
    BuildingTxEvent,
    ConfirmedEvent,
    EventBus,
    FailedEvent,
    LifecycleEvent,
    MemoryEventBus,
    OrderEvent,
    RedisEventBus,
    RoutingEvent,
    SubmittingEvent,
    Subscription,
    SubscriptionError,
    channel_for,
    parse_event,
)
from orderflow_core.execution.orders import (
    InvalidOrderStateError,
    Order,
    OrderError,
    OrderNotFoundError,
    OrderStatus,
    SwapJob,
    SwapRequest,
)
from orderflow_core.execution.queue import (
    JobOptions,
    JobResult,
    JobState,
    MemoryWorkQueue,
    QueueConsumer,
    QueuedJob,
    QueueError,
    RedisWorkQueue,
    WorkQueue,
)
from orderflow_core.execution.router import (
    ExecutionFailedError,
    QuoteRouter,
    RouterError,
    SimulatedVenue,
    UnknownVenueError,
    Venue,
    VenueQuote,
    VenueUnavailableError,
)
from orderflow_core.execution.store import (
    DuplicateOrderError,
    MemoryOrderStore,
    OrderStore,
    RedisOrderStore,
    StoreConnectionError,
    TransactionError,
    create_store,
)
from orderflow_core.execution.worker import SwapWorker

__all__ = [
    # Orders
    "Order",
    "OrderStatus",
    "SwapRequest",
    "SwapJob",
    "OrderError",
    "OrderNotFoundError",
    "InvalidOrderStateError",
    # Router
    "Venue",
    "SimulatedVenue",
    "QuoteRouter",
    "VenueQuote",
    "RouterError",
    "UnknownVenueError",
    "VenueUnavailableError",
    "ExecutionFailedError",
    # Events
    "LifecycleEvent",
    "RoutingEvent",
    "BuildingTxEvent",
    "SubmittingEvent",
    "ConfirmedEvent",
    "FailedEvent",
    "OrderEvent",
    "parse_event",
    "channel_for",
    "EventBus",
    "Subscription",
    "SubscriptionError",
    "MemoryEventBus",
    "RedisEventBus",
    # Queue
    "WorkQueue",
    "MemoryWorkQueue",
    "RedisWorkQueue",
    "QueueConsumer",
    "QueuedJob",
    "JobOptions",
    "JobResult",
    "JobState",
    "QueueError",
    # Store
    "OrderStore",
    "RedisOrderStore",
    "MemoryOrderStore",
    "create_store",
    "StoreConnectionError",
    "TransactionError",
    "DuplicateOrderError",
    # Worker
    "SwapWorker",
]
