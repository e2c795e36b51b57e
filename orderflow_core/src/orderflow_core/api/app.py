"""Order ingestion API and status WebSocket.

Routes:
    POST /api/orders/execute   validate, persist PENDING order, enqueue job
    GET  /api/orders/{id}      current order record
    GET  /health               backend health
    WS   /ws/status?orderId=   live lifecycle events for one order

Ingestion returns as soon as the job is enqueued; all execution happens in
the worker.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import FastAPI, Query, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow_core.api.gateway import OrderStatusRelay
from orderflow_core.execution.orders import Order, OrderStatus, SwapRequest, WireModel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from orderflow_core.execution.queue import QueueConsumer
    from orderflow_core.services import Services

log = structlog.get_logger()

APP_NAME: str = "OrderFlow"
APP_VERSION: str = "0.1.0"
QUEUED_MESSAGE: str = "Order Queued"


class ExecuteOrderResponse(WireModel):
    """Acknowledgement returned once an order is queued."""

    order_id: str
    status: OrderStatus
    message: str = QUEUED_MESSAGE


def create_app(
    services: Services,
    *,
    consumer: QueueConsumer | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Build the API around already constructed shared clients.

    Args:
        services: Store, bus, queue and router shared with the worker.
        consumer: Optional in-process queue consumer started with the app
            (single-process development setups on memory backends).
        cors_origins: Allowed CORS origins; defaults to any.
    """
    relay = OrderStatusRelay(services.bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("Starting API", app=APP_NAME, version=APP_VERSION)
        consumer_task = asyncio.create_task(consumer.run()) if consumer is not None else None
        try:
            yield
        finally:
            if consumer is not None and consumer_task is not None:
                consumer.stop()
                await consumer_task
            await services.aclose()
            log.info("API stopped", app=APP_NAME)

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_input(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.info("Rejected invalid order request", path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid Input", "details": jsonable_encoder(exc.errors())},
        )

    # --- Orders ---

    @app.post("/api/orders/execute", response_model=ExecuteOrderResponse)
    async def execute_order(payload: SwapRequest) -> ExecuteOrderResponse | JSONResponse:
        """Accept a swap order and queue it for execution."""
        order = Order.from_request(payload)
        try:
            services.store.insert(order)
            await services.queue.enqueue(order.to_job(), services.job_options)
        except Exception:
            log.exception("Failed to queue order", order_id=order.id)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Internal Server Error"},
            )

        log.info(
            "Order queued",
            order_id=order.id,
            input_asset=order.input_asset,
            output_asset=order.output_asset,
            amount=order.amount,
        )
        return ExecuteOrderResponse(order_id=order.id, status=order.status)

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str) -> Any:
        """Current durable record for an order."""
        order = services.store.get(order_id)
        if order is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "Order not found"},
            )
        return order.to_record()

    # --- Ops ---

    @app.get("/health")
    async def health() -> dict[str, Any]:
        report = await services.health()
        healthy = all(value for value in report.values() if isinstance(value, bool))
        return {"status": "ok" if healthy else "degraded", **report}

    # --- Status stream ---

    @app.websocket("/ws/status")
    async def status_stream(
        websocket: WebSocket,
        order_id: str | None = Query(default=None, alias="orderId"),
    ) -> None:
        await relay.serve(websocket, order_id)

    return app
