"""Common domain types and primitives for OrderFlow."""

from orderflow_core.common.types import (
    AssetId,
    DomainModel,
    OrderId,
    VenueName,
    utc_now,
)

__all__ = [
    "AssetId",
    "DomainModel",
    "OrderId",
    "VenueName",
    "utc_now",
]
