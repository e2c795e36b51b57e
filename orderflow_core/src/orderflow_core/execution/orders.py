"""Order model and lifecycle rules for OrderFlow.

An Order is the unit of work: a request to exchange ``amount`` of one asset
for another. It is inserted as PENDING by the ingestion API and then driven
through its lifecycle by the worker:

    PENDING -> ROUTING -> BUILDING_TX -> SUBMITTING -> CONFIRMED
                  |            |             |
                  +------------+-------------+--> FAILED -> ROUTING (queue retry)

Design Decisions:
- Immutable records: every status change produces a new validated Order
- The transition table lives on the model so every store enforces it
- settlement_id / venue are present if and only if the order is CONFIRMED
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Final

from pydantic import ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from orderflow_core.common.types import (
    MAX_ASSET_ID_LENGTH,
    AssetId,
    DomainModel,
    OrderId,
    VenueName,
    utc_now,
)


# ==============================================================================
# Enums
# ==============================================================================
class OrderStatus(str, Enum):
    """Order lifecycle state."""

    PENDING = "PENDING"  # Inserted by ingestion, not yet picked up
    ROUTING = "ROUTING"  # Fetching quotes from venues
    BUILDING_TX = "BUILDING_TX"  # Best venue chosen, building transaction
    SUBMITTING = "SUBMITTING"  # Transaction sent to venue
    CONFIRMED = "CONFIRMED"  # Settled (terminal)
    FAILED = "FAILED"  # Attempt failed; terminal unless the queue retries


VALID_TRANSITIONS: Final[dict[OrderStatus, frozenset[OrderStatus]]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ROUTING}),
    OrderStatus.ROUTING: frozenset({OrderStatus.BUILDING_TX, OrderStatus.FAILED}),
    OrderStatus.BUILDING_TX: frozenset({OrderStatus.SUBMITTING, OrderStatus.FAILED}),
    OrderStatus.SUBMITTING: frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED}),
    # A queue retry starts the state machine from scratch
    OrderStatus.FAILED: frozenset({OrderStatus.ROUTING}),
    OrderStatus.CONFIRMED: frozenset(),
}


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class OrderError(Exception):
    """Base exception for order lifecycle errors."""


class OrderNotFoundError(OrderError):
    """Raised when an order is not found in the store."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidOrderStateError(OrderError):
    """Raised when an order state transition is invalid."""

    def __init__(self, order_id: str, current: OrderStatus, attempted: OrderStatus) -> None:
        self.order_id = order_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Invalid state transition for order {order_id}: {current.value} -> {attempted.value}"
        )


# ==============================================================================
# Wire Models
# ==============================================================================
class WireModel(DomainModel):
    """Domain model serialised with camelCase field names."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class SwapRequest(WireModel):
    """Ingestion request body.

    Strict: wrong-typed fields (``"amount": "10"``, ``"inputAsset": 123``)
    are rejected rather than coerced.
    """

    input_asset: AssetId = Field(..., strict=True, min_length=1, max_length=MAX_ASSET_ID_LENGTH)
    output_asset: AssetId = Field(..., strict=True, min_length=1, max_length=MAX_ASSET_ID_LENGTH)
    amount: float = Field(..., strict=True, gt=0, allow_inf_nan=False)


class SwapJob(WireModel):
    """Work queue payload: everything the worker needs to start processing.

    Retry metadata (attempts, backoff) belongs to the queue envelope, not here.
    """

    order_id: OrderId
    amount: float = Field(..., gt=0)
    input_asset: AssetId
    output_asset: AssetId


class Order(WireModel):
    """Durable record of one swap order.

    Attributes:
        id: Unique order identifier (UUID string).
        input_asset: Asset being sold.
        output_asset: Asset being bought.
        amount: Quantity of input_asset to exchange.
        status: Current lifecycle state.
        settlement_id: Settlement identifier, set only when CONFIRMED.
        venue: Venue that executed the swap, set only when CONFIRMED.
        created_at: Creation timestamp (UTC), set once.
        updated_at: Timestamp of the last write (UTC).
    """

    id: OrderId = Field(default_factory=lambda: OrderId(str(uuid.uuid4())))  # noqa: A003
    input_asset: AssetId
    output_asset: AssetId
    amount: float = Field(..., gt=0)
    status: OrderStatus = OrderStatus.PENDING
    settlement_id: str | None = None
    venue: VenueName | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def validate_settlement_fields(self) -> Order:
        """settlement_id and venue are set if and only if status is CONFIRMED."""
        confirmed = self.status == OrderStatus.CONFIRMED
        has_settlement = self.settlement_id is not None and self.venue is not None
        has_any = self.settlement_id is not None or self.venue is not None
        if confirmed and not has_settlement:
            msg = "CONFIRMED orders require settlement_id and venue"
            raise ValueError(msg)
        if not confirmed and has_any:
            msg = f"settlement_id/venue must be empty while {self.status.value}"
            raise ValueError(msg)
        return self

    @classmethod
    def from_request(cls, request: SwapRequest) -> Order:
        """Create a PENDING order from a validated ingestion request."""
        return cls(
            input_asset=request.input_asset,
            output_asset=request.output_asset,
            amount=request.amount,
        )

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return not VALID_TRANSITIONS[self.status]

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        """Check if state transition is valid."""
        return new_status in VALID_TRANSITIONS[self.status]

    def transition(
        self,
        new_status: OrderStatus,
        *,
        settlement_id: str | None = None,
        venue: str | None = None,
    ) -> Order:
        """Return a copy of this order moved to ``new_status``.

        Raises:
            InvalidOrderStateError: If the transition is not allowed.
            pydantic.ValidationError: If settlement fields break the invariant.
        """
        if not self.can_transition_to(new_status):
            raise InvalidOrderStateError(self.id, self.status, new_status)

        data = self.model_dump()
        data.update(
            status=new_status,
            settlement_id=settlement_id,
            venue=venue,
            updated_at=utc_now(),
        )
        return Order.model_validate(data)

    def to_job(self) -> SwapJob:
        """Build the work queue payload for this order."""
        return SwapJob(
            order_id=self.id,
            amount=self.amount,
            input_asset=self.input_asset,
            output_asset=self.output_asset,
        )

    def to_record(self) -> dict[str, Any]:
        """Public JSON-compatible view with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
