"""Domain primitives and value objects for OrderFlow.

This module defines the immutable core types shared by the ingestion API,
the worker and the status relay. Domain objects follow the same rules:
- Immutability (frozen=True)
- Strict validation at construction time
- No infrastructure dependencies (pure domain layer)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Final, NewType

from pydantic import BaseModel, ConfigDict

# ==============================================================================
# Domain Primitives (NewTypes for type safety without runtime overhead)
# ==============================================================================
AssetId = NewType("AssetId", str)
"""Identifier of an exchangeable asset (ticker or mint address, e.g. SOL)."""

OrderId = NewType("OrderId", str)
"""Opaque order identifier (UUID string), generated at ingestion."""

VenueName = NewType("VenueName", str)
"""Name of an execution venue registered with the quote router."""

MAX_ASSET_ID_LENGTH: Final[int] = 64  # Mint addresses are 32-44 base58 chars


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# ==============================================================================
# Base Domain Model
# ==============================================================================
class DomainModel(BaseModel):
    """Base model for immutable transfer objects.

    - frozen=True: values never change after construction
    - extra="forbid": unknown fields are schema drift, reject them
    - populate_by_name: accept both python names and camelCase wire aliases
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
    )
