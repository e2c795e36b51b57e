"""HTTP ingestion API and WebSocket status relay for OrderFlow."""

from orderflow_core.api.app import ExecuteOrderResponse, create_app
from orderflow_core.api.gateway import OrderStatusRelay

__all__ = [
    "ExecuteOrderResponse",
    "OrderStatusRelay",
    "create_app",
]
