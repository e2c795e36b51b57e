"""Tests for the Order model, lifecycle table and order store.

Tests cover:
- Ingestion request validation
- Order transition rules and the settlement invariant
- MemoryOrderStore and RedisOrderStore insert/get/transition
"""

from __future__ import annotations

from typing import Any

import fakeredis
import pytest
from pydantic import ValidationError

from orderflow_core.execution import (
    DuplicateOrderError,
    InvalidOrderStateError,
    MemoryOrderStore,
    Order,
    OrderNotFoundError,
    OrderStatus,
    OrderStore,
    RedisOrderStore,
    SwapRequest,
    TransactionError,
    create_store,
)


def _order(**overrides: object) -> Order:
    data: dict[str, object] = {"input_asset": "SOL", "output_asset": "USDC", "amount": 500}
    data.update(overrides)
    return Order(**data)  # type: ignore[arg-type]


def _confirm(order: Order) -> Order:
    return (
        order.transition(OrderStatus.ROUTING)
        .transition(OrderStatus.BUILDING_TX)
        .transition(OrderStatus.SUBMITTING)
        .transition(OrderStatus.CONFIRMED, settlement_id="5xabc", venue="Raydium")
    )


# ==============================================================================
# Request Validation Tests
# ==============================================================================
class TestSwapRequest:
    """Tests for ingestion request validation."""

    def test_accepts_camel_case_body(self) -> None:
        """Test wire aliases populate the request."""
        request = SwapRequest.model_validate(
            {"inputAsset": "SOL", "outputAsset": "USDC", "amount": 500}
        )
        assert request.input_asset == "SOL"
        assert request.output_asset == "USDC"
        assert request.amount == 500.0

    def test_rejects_empty_body(self) -> None:
        """Test every field is required."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({})

    @pytest.mark.parametrize("amount", [0, -1, -0.5])
    def test_rejects_non_positive_amount(self, amount: float) -> None:
        """Test amount must be strictly positive."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({"inputAsset": "SOL", "outputAsset": "USDC", "amount": amount})

    def test_rejects_string_amount(self) -> None:
        """Test amounts are not coerced from strings."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({"inputAsset": "SOL", "outputAsset": "USDC", "amount": "10"})

    def test_rejects_non_string_asset(self) -> None:
        """Test asset identifiers must be strings."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({"inputAsset": 123, "outputAsset": "USDC", "amount": 1})

    def test_rejects_empty_asset(self) -> None:
        """Test asset identifiers must be non-empty."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({"inputAsset": "", "outputAsset": "USDC", "amount": 1})

    def test_rejects_overlong_asset(self) -> None:
        """Test asset identifiers are bounded."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate({"inputAsset": "X" * 65, "outputAsset": "USDC", "amount": 1})

    def test_rejects_unknown_field(self) -> None:
        """Test unknown fields are schema drift."""
        with pytest.raises(ValidationError):
            SwapRequest.model_validate(
                {"inputAsset": "SOL", "outputAsset": "USDC", "amount": 1, "slippage": 0.5}
            )


# ==============================================================================
# Order Model Tests
# ==============================================================================
class TestOrder:
    """Tests for Order model."""

    def test_create_order(self) -> None:
        """Test a new order starts PENDING without settlement fields."""
        order = _order()
        assert order.id
        assert order.status == OrderStatus.PENDING
        assert order.settlement_id is None
        assert order.venue is None

    def test_order_requires_positive_amount(self) -> None:
        """Test order validation for amount."""
        with pytest.raises(ValidationError):
            _order(amount=0)

    def test_from_request(self) -> None:
        """Test ingestion requests become PENDING orders with fresh ids."""
        request = SwapRequest(input_asset="SOL", output_asset="USDC", amount=500)
        first = Order.from_request(request)
        second = Order.from_request(request)
        assert first.status == OrderStatus.PENDING
        assert first.amount == 500
        assert first.id != second.id

    def test_happy_path_transitions(self) -> None:
        """Test the full lifecycle to CONFIRMED."""
        order = _order()
        confirmed = _confirm(order)

        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.settlement_id == "5xabc"
        assert confirmed.venue == "Raydium"
        assert confirmed.id == order.id
        assert confirmed.created_at == order.created_at
        assert confirmed.updated_at >= order.updated_at
        assert confirmed.is_terminal

    def test_transition_returns_copy(self) -> None:
        """Test transitions never mutate the original record."""
        order = _order()
        routed = order.transition(OrderStatus.ROUTING)
        assert order.status == OrderStatus.PENDING
        assert routed.status == OrderStatus.ROUTING

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.ROUTING, OrderStatus.BUILDING_TX, OrderStatus.SUBMITTING],
    )
    def test_any_active_state_can_fail(self, status: OrderStatus) -> None:
        """Test FAILED is reachable from every in-flight state."""
        order = _order()
        for step in (OrderStatus.ROUTING, OrderStatus.BUILDING_TX, OrderStatus.SUBMITTING):
            order = order.transition(step)
            if step == status:
                break
        failed = order.transition(OrderStatus.FAILED)
        assert failed.status == OrderStatus.FAILED
        assert failed.settlement_id is None

    def test_failed_order_can_be_retried(self) -> None:
        """Test a retry restarts from ROUTING."""
        order = _order().transition(OrderStatus.ROUTING).transition(OrderStatus.FAILED)
        assert order.can_transition_to(OrderStatus.ROUTING)
        assert order.transition(OrderStatus.ROUTING).status == OrderStatus.ROUTING

    def test_cannot_skip_states(self) -> None:
        """Test PENDING cannot jump ahead."""
        order = _order()
        with pytest.raises(InvalidOrderStateError) as exc_info:
            order.transition(OrderStatus.SUBMITTING)
        assert exc_info.value.current == OrderStatus.PENDING
        assert exc_info.value.attempted == OrderStatus.SUBMITTING

    def test_pending_cannot_fail_directly(self) -> None:
        """Test FAILED is only reachable once processing started."""
        with pytest.raises(InvalidOrderStateError):
            _order().transition(OrderStatus.FAILED)

    def test_confirmed_is_final(self) -> None:
        """Test nothing leaves CONFIRMED."""
        confirmed = _confirm(_order())
        for status in OrderStatus:
            assert not confirmed.can_transition_to(status)
        with pytest.raises(InvalidOrderStateError):
            confirmed.transition(OrderStatus.FAILED)

    def test_confirmed_requires_settlement(self) -> None:
        """Test CONFIRMED without settlement id and venue is rejected."""
        order = (
            _order()
            .transition(OrderStatus.ROUTING)
            .transition(OrderStatus.BUILDING_TX)
            .transition(OrderStatus.SUBMITTING)
        )
        with pytest.raises(ValidationError):
            order.transition(OrderStatus.CONFIRMED)
        with pytest.raises(ValidationError):
            order.transition(OrderStatus.CONFIRMED, settlement_id="5xabc")

    def test_settlement_only_when_confirmed(self) -> None:
        """Test settlement fields cannot appear before confirmation."""
        with pytest.raises(ValidationError):
            _order(settlement_id="5xabc", venue="Raydium")
        with pytest.raises(ValidationError):
            _order().transition(OrderStatus.ROUTING, venue="Raydium")

    def test_to_job(self) -> None:
        """Test the work queue payload carries order data."""
        order = _order()
        job = order.to_job()
        assert job.order_id == order.id
        assert job.amount == order.amount
        assert job.input_asset == "SOL"
        assert job.output_asset == "USDC"

    def test_to_record_uses_camel_case(self) -> None:
        """Test the public record uses wire field names."""
        record = _confirm(_order()).to_record()
        assert record["status"] == "CONFIRMED"
        assert record["settlementId"] == "5xabc"
        assert record["inputAsset"] == "SOL"
        assert "createdAt" in record


# ==============================================================================
# Store Tests
# ==============================================================================
class TestMemoryOrderStore:
    """Tests for MemoryOrderStore."""

    def test_insert_get(self) -> None:
        """Test basic insert/get operations."""
        store = MemoryOrderStore()
        order = store.insert(_order())
        loaded = store.get(order.id)
        assert loaded == order
        assert len(store) == 1

    def test_get_nonexistent(self) -> None:
        """Test getting an unknown order returns None."""
        assert MemoryOrderStore().get("missing") is None

    def test_duplicate_insert(self) -> None:
        """Test inserting the same id twice is refused."""
        store = MemoryOrderStore()
        order = store.insert(_order())
        with pytest.raises(DuplicateOrderError):
            store.insert(order)

    def test_transition_persists(self) -> None:
        """Test transitions are written and recorded in order."""
        store = MemoryOrderStore()
        order = store.insert(_order())

        store.transition(order.id, OrderStatus.ROUTING)
        store.transition(order.id, OrderStatus.BUILDING_TX)
        store.transition(order.id, OrderStatus.SUBMITTING)
        final = store.transition(
            order.id,
            OrderStatus.CONFIRMED,
            settlement_id="5xabc",
            venue="Meteora",
        )

        assert store.get(order.id) == final
        assert store.statuses(order.id) == [
            OrderStatus.PENDING,
            OrderStatus.ROUTING,
            OrderStatus.BUILDING_TX,
            OrderStatus.SUBMITTING,
            OrderStatus.CONFIRMED,
        ]

    def test_invalid_transition_leaves_record(self) -> None:
        """Test a rejected transition does not write."""
        store = MemoryOrderStore()
        order = store.insert(_order())
        with pytest.raises(InvalidOrderStateError):
            store.transition(order.id, OrderStatus.CONFIRMED, settlement_id="5x", venue="Raydium")
        assert store.get(order.id) == order

    def test_transition_unknown_order(self) -> None:
        """Test transitions on missing orders raise."""
        with pytest.raises(OrderNotFoundError):
            MemoryOrderStore().transition("missing", OrderStatus.ROUTING)

    def test_clear(self) -> None:
        """Test clearing all data."""
        store = MemoryOrderStore()
        store.insert(_order())
        store.clear()
        assert len(store) == 0

    def test_health_check(self) -> None:
        """Test health check always returns True."""
        assert MemoryOrderStore().health_check() is True

    def test_factory_without_redis(self) -> None:
        """Test the factory returns a memory store when Redis is disabled."""
        assert isinstance(create_store(use_redis=False), MemoryOrderStore)


# ==============================================================================
# Redis Store Tests
# ==============================================================================
class ContendedPipeline:
    """Pipeline wrapper letting a rival client rewrite the watched key."""

    def __init__(self, owner: ContendedRedis, pipe: Any) -> None:
        self.owner = owner
        self.pipe = pipe

    def __enter__(self) -> ContendedPipeline:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.pipe.reset()

    def __getattr__(self, name: str) -> Any:
        return getattr(self.pipe, name)

    def get(self, key: str) -> Any:
        value = self.pipe.get(key)
        if self.owner.conflicts > 0:
            self.owner.conflicts -= 1
            self.owner.rival.set(key, value)
        return value


class ContendedRedis(fakeredis.FakeRedis):
    """FakeRedis where a concurrent writer wins the first ``conflicts`` transactions."""

    def __init__(self, conflicts: int, server: fakeredis.FakeServer) -> None:
        super().__init__(server=server, decode_responses=True)
        self.conflicts = conflicts
        self.rival = fakeredis.FakeRedis(server=server, decode_responses=True)

    def pipeline(  # type: ignore[override]
        self, transaction: bool = True, shard_hint: Any = None
    ) -> ContendedPipeline:
        return ContendedPipeline(self, super().pipeline(transaction, shard_hint))


def _redis_store(client: fakeredis.FakeRedis | None = None) -> RedisOrderStore:
    if client is None:
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisOrderStore(client=client)


class TestRedisOrderStore:
    """Tests for RedisOrderStore against an in-process Redis."""

    def test_insert_get(self) -> None:
        """Test an inserted order round-trips through Redis."""
        store = _redis_store()
        assert isinstance(store, OrderStore)
        order = store.insert(_order())

        assert store.get(order.id) == order
        assert store.get("missing") is None
        assert store.health_check() is True

    def test_duplicate_insert(self) -> None:
        """Test SET NX refuses to overwrite an existing order."""
        store = _redis_store()
        order = store.insert(_order())

        with pytest.raises(DuplicateOrderError):
            store.insert(order.model_copy(update={"amount": 1.0}))
        assert store.get(order.id).amount == 500  # type: ignore[union-attr]

    def test_transition_persists(self) -> None:
        """Test transitions are validated and written."""
        store = _redis_store()
        order = store.insert(_order())

        store.transition(order.id, OrderStatus.ROUTING)
        store.transition(order.id, OrderStatus.BUILDING_TX)
        store.transition(order.id, OrderStatus.SUBMITTING)
        final = store.transition(
            order.id,
            OrderStatus.CONFIRMED,
            settlement_id="5xabc",
            venue="Meteora",
        )

        loaded = store.get(order.id)
        assert loaded == final
        assert loaded.settlement_id == "5xabc"  # type: ignore[union-attr]

    def test_invalid_transition_leaves_record(self) -> None:
        """Test a rejected transition does not write."""
        store = _redis_store()
        order = store.insert(_order())

        with pytest.raises(InvalidOrderStateError):
            store.transition(order.id, OrderStatus.SUBMITTING)
        assert store.get(order.id) == order

    def test_transition_unknown_order(self) -> None:
        """Test transitions on missing orders raise."""
        with pytest.raises(OrderNotFoundError):
            _redis_store().transition("missing", OrderStatus.ROUTING)

    def test_concurrent_write_is_retried(self) -> None:
        """Test a transaction invalidated by another writer is retried."""
        server = fakeredis.FakeServer()
        client = ContendedRedis(conflicts=2, server=server)
        store = _redis_store(client)
        order = store.insert(_order())

        updated = store.transition(order.id, OrderStatus.ROUTING)

        assert updated.status == OrderStatus.ROUTING
        assert client.conflicts == 0
        assert store.get(order.id).status == OrderStatus.ROUTING  # type: ignore[union-attr]

    def test_persistent_contention_raises(self) -> None:
        """Test TransactionError once every attempt loses the race."""
        server = fakeredis.FakeServer()
        store = _redis_store(ContendedRedis(conflicts=100, server=server))
        order = store.insert(_order())

        with pytest.raises(TransactionError):
            store.transition(order.id, OrderStatus.ROUTING)
        assert store.get(order.id).status == OrderStatus.PENDING  # type: ignore[union-attr]

    def test_unreadable_record_reads_as_missing(self) -> None:
        """Test a corrupt record is logged and treated as absent."""
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        store = _redis_store(client)
        client.set(store._key("broken"), "{not json")

        assert store.get("broken") is None
