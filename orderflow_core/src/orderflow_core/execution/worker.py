"""Swap Worker: the order state machine.

The worker consumes SwapJobs handed out by the work queue and drives each
order through its lifecycle:

    ROUTING -> BUILDING_TX -> SUBMITTING -> CONFIRMED
       |            |             |
       +------------+-------------+--> FAILED

Every transition is persisted to the order store and then published on the
order's event channel. Failures are caught once, recorded as FAILED, and
reported to the queue as a JobResult so it can apply its retry policy. A
retry starts again from ROUTING: no partial progress survives an attempt.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Final

import structlog

from orderflow_core.execution.events import (
    BuildingTxEvent,
    ConfirmedEvent,
    FailedEvent,
    RoutingEvent,
    SubmittingEvent,
)
from orderflow_core.execution.orders import OrderNotFoundError, OrderStatus
from orderflow_core.execution.queue import JobResult

if TYPE_CHECKING:
    from orderflow_core.execution.events import EventBus, LifecycleEvent
    from orderflow_core.execution.orders import SwapJob
    from orderflow_core.execution.router import QuoteRouter
    from orderflow_core.execution.store import OrderStore

log = structlog.get_logger()

DEFAULT_BUILD_DELAY: Final[float] = 0.5  # seconds of simulated transaction construction
INTERRUPTED_ERROR: Final[str] = "previous attempt interrupted"

# Statuses only a running attempt leaves behind
IN_FLIGHT_STATUSES: Final[frozenset[OrderStatus]] = frozenset(
    {OrderStatus.ROUTING, OrderStatus.BUILDING_TX, OrderStatus.SUBMITTING}
)


class SwapWorker:
    """Drives one order per job through quote, build, submit and confirm.

    The worker holds no per-order state; store, bus and router are shared
    process-wide clients injected at construction.

    Attributes:
        store: Order persistence backend.
        bus: Event bus receiving one event per transition.
        router: Quote router over the configured venues.
        build_delay: Simulated transaction build time in seconds.
    """

    def __init__(
        self,
        store: OrderStore,
        bus: EventBus,
        router: QuoteRouter,
        build_delay: float = DEFAULT_BUILD_DELAY,
    ) -> None:
        if build_delay < 0:
            msg = f"build_delay must be >= 0, got {build_delay}"
            raise ValueError(msg)
        self.store = store
        self.bus = bus
        self.router = router
        self.build_delay = build_delay

    async def process(self, job: SwapJob) -> JobResult:
        """Run one attempt for ``job``; never raises for order-level failures."""
        order = self.store.get(job.order_id)
        if order is None:
            log.error("Job references unknown order", order_id=job.order_id)
            return JobResult.failure(str(OrderNotFoundError(job.order_id)), retryable=False)

        if order.status == OrderStatus.CONFIRMED:
            # Redelivery of a job whose order already settled
            log.info("Order already confirmed, skipping", order_id=job.order_id)
            return JobResult.ok(
                settlement_id=order.settlement_id,
                venue=order.venue,
                skipped=True,
            )

        log.info("Processing order", order_id=job.order_id, amount=job.amount)
        try:
            if order.status in IN_FLIGHT_STATUSES:
                # Redelivery after the holding worker died mid-attempt
                log.warning(
                    "Order interrupted mid-flight, restarting",
                    order_id=job.order_id,
                    status=order.status.value,
                )
                await self._advance(
                    job.order_id, OrderStatus.FAILED, FailedEvent(error=INTERRUPTED_ERROR)
                )
            return await self._execute(job)
        except Exception as exc:
            return await self._fail(job, exc)

    async def _execute(self, job: SwapJob) -> JobResult:
        order_id = job.order_id

        await self._advance(order_id, OrderStatus.ROUTING, RoutingEvent())

        best = await self.router.best_quote(job.amount)
        venue = best.venue
        log.info(
            "Best venue selected",
            order_id=order_id,
            venue=venue,
            output_amount=round(best.output_amount, 6),
        )

        await self._advance(order_id, OrderStatus.BUILDING_TX, BuildingTxEvent(venue=venue))
        await asyncio.sleep(self.build_delay)

        await self._advance(order_id, OrderStatus.SUBMITTING, SubmittingEvent())

        settlement_id = await self.router.execute(venue, job.amount)

        await self._advance(
            order_id,
            OrderStatus.CONFIRMED,
            ConfirmedEvent(settlement_id=settlement_id, venue=venue),
            settlement_id=settlement_id,
            venue=venue,
        )
        return JobResult.ok(settlement_id=settlement_id, venue=venue)

    async def _advance(
        self,
        order_id: str,
        status: OrderStatus,
        event: LifecycleEvent,
        *,
        settlement_id: str | None = None,
        venue: str | None = None,
    ) -> None:
        """Persist the transition, then publish it."""
        self.store.transition(order_id, status, settlement_id=settlement_id, venue=venue)
        await self._publish(order_id, event)
        log.info("Order transitioned", order_id=order_id, status=status.value)

    async def _publish(self, order_id: str, event: LifecycleEvent) -> None:
        try:
            await self.bus.publish(order_id, event)
        except Exception as exc:
            # Notification faults never change the order outcome
            log.error(
                "Event delivery failed",
                order_id=order_id,
                status=event.status,
                error=str(exc),
            )

    async def _fail(self, job: SwapJob, exc: Exception) -> JobResult:
        order_id = job.order_id
        error = str(exc) or type(exc).__name__
        log.error(
            "Order processing failed",
            order_id=order_id,
            error=error,
            error_type=type(exc).__name__,
        )

        try:
            self.store.transition(order_id, OrderStatus.FAILED)
        except Exception as store_exc:
            log.error(
                "Failed to persist FAILED status",
                order_id=order_id,
                error=str(store_exc),
            )

        await self._publish(order_id, FailedEvent(error=error))
        return JobResult.failure(error, retryable=not isinstance(exc, OrderNotFoundError))
