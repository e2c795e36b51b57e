"""Order status relay: forwards an order's lifecycle events to one WebSocket.

Each connection owns exactly one event bus subscription. Two tasks run per
connection:

- forward: subscription -> client, one text frame per event
- listen: client -> nowhere, only watches for the disconnect

Whichever finishes first ends the session. The subscription is closed
exactly once on every exit path, cancellation of the connection included.
A dropped subscription also closes the client connection.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from fastapi import WebSocketDisconnect, status
from fastapi.websockets import WebSocketState

from orderflow_core.execution.events import SubscriptionError

if TYPE_CHECKING:
    from fastapi import WebSocket

    from orderflow_core.execution.events import EventBus, Subscription

log = structlog.get_logger()


class OrderStatusRelay:
    """Bridges event bus subscriptions to WebSocket clients.

    Attributes:
        bus: Event bus shared with the workers.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def serve(self, websocket: WebSocket, order_id: str | None) -> None:
        """Stream ``order_id``'s events to ``websocket`` until either side ends."""
        if not order_id:
            log.info("Rejecting status stream without orderId")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        log.info("Client connected tracking order", order_id=order_id)

        try:
            subscription = await self.bus.subscribe(order_id)
        except SubscriptionError as exc:
            log.error("Event subscription failed", order_id=order_id, error=str(exc))
            await self._close(websocket, code=status.WS_1011_INTERNAL_ERROR)
            return

        forward = asyncio.create_task(self._forward(websocket, subscription))
        listen = asyncio.create_task(self._listen(websocket))
        try:
            await asyncio.wait({forward, listen}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Runs to completion even if this connection task is cancelled
            await asyncio.shield(self._release(websocket, subscription, forward, listen))

    async def _release(
        self,
        websocket: WebSocket,
        subscription: Subscription,
        *tasks: asyncio.Task[None],
    ) -> None:
        for task in tasks:
            task.cancel()
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            try:
                await subscription.close()
            finally:
                await self._close(websocket)
                log.info("Client disconnected", order_id=subscription.order_id)

    async def _forward(self, websocket: WebSocket, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                if not await self._send(websocket, event.encode()):
                    return
        except SubscriptionError as exc:
            log.warning(
                "Event subscription dropped, closing connection",
                order_id=subscription.order_id,
                error=str(exc),
            )

    async def _listen(self, websocket: WebSocket) -> None:
        # Inbound client messages carry no meaning
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    @staticmethod
    def _connected(websocket: WebSocket) -> bool:
        return (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        )

    async def _send(self, websocket: WebSocket, frame: str) -> bool:
        if not self._connected(websocket):
            return False
        try:
            await websocket.send_text(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log.warning("Failed to send status frame", error=str(exc))
            return False
        return True

    async def _close(self, websocket: WebSocket, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
        if not self._connected(websocket):
            return
        try:
            await websocket.close(code=code)
        except Exception as exc:
            # The ASGI transport may already be torn down
            log.debug("WebSocket already closed", error=str(exc))
