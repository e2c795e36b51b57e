"""Tests for the ingestion API and status WebSocket endpoint."""

from __future__ import annotations

import asyncio
import time

import pytest
from conftest import FixedVenue
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from orderflow_core.api import create_app
from orderflow_core.execution import (
    JobOptions,
    JobState,
    MemoryWorkQueue,
    Order,
    OrderStatus,
    QueueConsumer,
    QuoteRouter,
    SwapJob,
    SwapWorker,
)
from orderflow_core.services import Services, memory_services

SWAP_BODY = {"inputAsset": "SOL", "outputAsset": "USDC", "amount": 500}


def _services() -> Services:
    router = QuoteRouter([FixedVenue("Raydium", 149.0), FixedVenue("Meteora", 151.0)])
    return memory_services(router=router, job_options=JobOptions(backoff_delay=0.01))


def _consumer(services: Services) -> QueueConsumer:
    worker = SwapWorker(services.store, services.bus, services.router, build_delay=0.0)
    return QueueConsumer(services.queue, worker.process, poll_timeout=0.05)


class BrokenQueue(MemoryWorkQueue):
    """Queue whose transport always fails on enqueue."""

    async def enqueue(self, job: SwapJob, options: JobOptions | None = None) -> None:  # type: ignore[override]
        raise ConnectionError("queue down")


# ==============================================================================
# Ingestion Tests
# ==============================================================================
class TestExecuteOrder:
    """Tests for POST /api/orders/execute."""

    def test_queues_valid_order(self) -> None:
        """Test a valid request is persisted PENDING and enqueued."""
        services = _services()
        client = TestClient(create_app(services))

        response = client.post("/api/orders/execute", json=SWAP_BODY)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["message"] == "Order Queued"

        order = services.store.get(body["orderId"])
        assert order is not None
        assert order.status == OrderStatus.PENDING
        assert order.amount == 500
        assert order.input_asset == "SOL"

    def test_enqueued_job_matches_order(self) -> None:
        """Test the queued payload references the created order."""
        services = _services()
        client = TestClient(create_app(services))

        order_id = client.post("/api/orders/execute", json=SWAP_BODY).json()["orderId"]

        job = asyncio.run(services.queue.reserve(timeout=0.5))
        assert job is not None
        assert job.payload.order_id == order_id
        assert job.payload.amount == 500
        assert job.options.backoff_delay == 0.01

    def test_distinct_ids_per_request(self) -> None:
        """Test each accepted request creates its own order."""
        client = TestClient(create_app(_services()))
        first = client.post("/api/orders/execute", json=SWAP_BODY).json()["orderId"]
        second = client.post("/api/orders/execute", json=SWAP_BODY).json()["orderId"]
        assert first != second

    def test_empty_payload_rejected_without_insert(self) -> None:
        """Test an empty body is a 400 and creates nothing."""
        services = _services()
        client = TestClient(create_app(services))

        response = client.post("/api/orders/execute", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Input"
        assert len(services.store) == 0  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        "body",
        [
            {"inputAsset": "SOL", "outputAsset": "USDC", "amount": "10"},
            {"inputAsset": "SOL", "outputAsset": "USDC", "amount": 0},
            {"inputAsset": "SOL", "outputAsset": "USDC", "amount": -5},
            {"inputAsset": 123, "outputAsset": "USDC", "amount": 1},
            {"inputAsset": "", "outputAsset": "USDC", "amount": 1},
            {"outputAsset": "USDC", "amount": 1},
        ],
    )
    def test_invalid_payloads_rejected(self, body: dict[str, object]) -> None:
        """Test malformed fields are rejected with 400."""
        services = _services()
        client = TestClient(create_app(services))

        response = client.post("/api/orders/execute", json=body)

        assert response.status_code == 400
        assert len(services.store) == 0  # type: ignore[arg-type]

    def test_malformed_json_rejected(self) -> None:
        """Test a body that is not JSON is a 400."""
        client = TestClient(create_app(_services()))
        response = client.post(
            "/api/orders/execute",
            content=b"not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    def test_backend_failure_is_500(self) -> None:
        """Test store/queue faults produce a generic 500."""
        services = _services()
        services.queue = BrokenQueue()
        client = TestClient(create_app(services))

        response = client.post("/api/orders/execute", json=SWAP_BODY)

        assert response.status_code == 500
        assert response.json() == {"error": "Internal Server Error"}


# ==============================================================================
# Query and Ops Tests
# ==============================================================================
class TestOrderQueries:
    """Tests for order lookup, health and CORS."""

    def test_get_order(self) -> None:
        """Test the current record is returned with wire field names."""
        services = _services()
        client = TestClient(create_app(services))
        order_id = client.post("/api/orders/execute", json=SWAP_BODY).json()["orderId"]

        response = client.get(f"/api/orders/{order_id}")

        assert response.status_code == 200
        record = response.json()
        assert record["id"] == order_id
        assert record["status"] == "PENDING"
        assert record["inputAsset"] == "SOL"
        assert record["settlementId"] is None

    def test_get_unknown_order(self) -> None:
        """Test unknown ids are 404."""
        client = TestClient(create_app(_services()))
        response = client.get("/api/orders/missing")
        assert response.status_code == 404

    def test_health(self) -> None:
        """Test health reports backends and venues."""
        client = TestClient(create_app(_services()))
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["store"] is True
        assert body["venues"] == ["Raydium", "Meteora"]

    def test_cors_preflight(self) -> None:
        """Test browsers may call the API cross-origin."""
        client = TestClient(create_app(_services()))
        response = client.options(
            "/api/orders/execute",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] in ("*", "http://localhost:5173")


# ==============================================================================
# Status WebSocket Tests
# ==============================================================================
class TestStatusWebSocket:
    """Tests for /ws/status."""

    def test_missing_order_id_is_rejected(self) -> None:
        """Test connections without orderId are closed before any frame."""
        client = TestClient(create_app(_services()))
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/status") as websocket:
                websocket.receive_text()
        assert exc_info.value.code == 1008

    def test_streams_lifecycle_of_processed_order(self) -> None:
        """Test a connected client sees every transition of its order."""
        services = _services()
        app = create_app(services, consumer=_consumer(services))
        order = Order(input_asset="SOL", output_asset="USDC", amount=500)

        with TestClient(app) as client:
            with client.websocket_connect(f"/ws/status?orderId={order.id}") as websocket:
                services.store.insert(order)
                client.portal.call(services.queue.enqueue, order.to_job(), services.job_options)  # type: ignore[union-attr]

                frames = [websocket.receive_json() for _ in range(4)]

        assert [frame["status"] for frame in frames] == [
            "ROUTING",
            "BUILDING_TX",
            "SUBMITTING",
            "CONFIRMED",
        ]
        assert frames[1]["venue"] == "Meteora"
        assert frames[3]["venue"] == "Meteora"
        assert frames[3]["settlementId"].startswith("5x")

    def test_embedded_worker_confirms_posted_order(self) -> None:
        """Test an order posted to the API is executed by the in-process worker."""
        services = _services()
        app = create_app(services, consumer=_consumer(services))

        with TestClient(app) as client:
            order_id = client.post("/api/orders/execute", json=SWAP_BODY).json()["orderId"]
            deadline = time.monotonic() + 2.0
            record = client.get(f"/api/orders/{order_id}").json()
            while record["status"] != "CONFIRMED" and time.monotonic() < deadline:
                time.sleep(0.02)
                record = client.get(f"/api/orders/{order_id}").json()

            counts = client.portal.call(services.queue.counts)  # type: ignore[union-attr]

        assert record["status"] == "CONFIRMED"
        assert record["venue"] == "Meteora"
        assert counts[JobState.COMPLETED.value] == 1
