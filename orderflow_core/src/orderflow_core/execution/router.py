"""Quote Router for OrderFlow.

The router is the system's only contact with execution venues. It asks every
registered venue for a quote, picks the best one and executes the swap there.
Venues are simulated: no real DEX or chain connectivity exists.

Responsibilities:
- Concurrent quote fetching across all venues
- Best venue selection (strictly greatest quoted output)
- Swap execution returning a settlement identifier

Design Decisions:
- Protocol-based venue interface, any number of venues
- Ties resolve to the first-registered venue
- Any failed quote fails the whole routing step (no partial routing)
"""

from __future__ import annotations

import asyncio
import random
import string
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from orderflow_core.common.types import VenueName

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

log = structlog.get_logger()


# ==============================================================================
# Constants
# ==============================================================================
DEFAULT_VENUES: Final[tuple[str, ...]] = ("Raydium", "Meteora")
DEFAULT_BASE_RATE: Final[float] = 150.0  # Output units per input unit (1 SOL ~ 150 USDC)
DEFAULT_PRICE_VARIANCE: Final[float] = 0.01  # +/- 1%
DEFAULT_QUOTE_LATENCY: Final[tuple[float, float]] = (0.2, 0.4)  # seconds
DEFAULT_EXECUTION_LATENCY: Final[float] = 1.0  # seconds
SETTLEMENT_ID_PREFIX: Final[str] = "5x"

_BASE36: Final[str] = string.digits + string.ascii_lowercase


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class RouterError(Exception):
    """Base exception for routing errors."""


class UnknownVenueError(RouterError):
    """Raised when a venue name is not registered."""

    def __init__(self, venue: str) -> None:
        self.venue = venue
        super().__init__(f"Unknown venue: {venue}")


class VenueUnavailableError(RouterError):
    """Raised when a venue cannot produce a quote."""

    def __init__(self, venue: str, reason: str = "venue unavailable") -> None:
        self.venue = venue
        self.reason = reason
        super().__init__(f"{venue}: {reason}")


class ExecutionFailedError(RouterError):
    """Raised when a venue fails to execute a swap."""

    def __init__(self, venue: str, reason: str = "execution failed") -> None:
        self.venue = venue
        self.reason = reason
        super().__init__(f"{venue}: {reason}")


# ==============================================================================
# Models
# ==============================================================================
class VenueQuote(BaseModel):
    """Quoted output amount for a given input amount at one venue."""

    model_config = {"frozen": True}

    venue: VenueName
    amount: float = Field(gt=0)
    output_amount: float = Field(ge=0)


# ==============================================================================
# Venue Protocol
# ==============================================================================
@runtime_checkable
class Venue(Protocol):
    """Protocol for execution venues."""

    name: str

    async def quote(self, amount: float) -> float:
        """Return the output amount the venue would give for ``amount``."""
        ...

    async def execute(self, amount: float) -> str:
        """Perform the swap and return a settlement identifier."""
        ...


# ==============================================================================
# Simulated Venue
# ==============================================================================
class SimulatedVenue:
    """Simulated venue with latency, price variance and failure injection.

    Attributes:
        name: Venue name.
        base_rate: Mean output units per input unit.
        variance: Relative price variance (0.01 = +/- 1%).
        quote_latency: (min, max) seconds before a quote returns.
        execution_latency: Seconds before an execution settles.
        quote_failure_rate: Probability a quote raises VenueUnavailableError.
        execution_failure_rate: Probability an execution raises ExecutionFailedError.
    """

    def __init__(
        self,
        name: str,
        base_rate: float = DEFAULT_BASE_RATE,
        variance: float = DEFAULT_PRICE_VARIANCE,
        quote_latency: Sequence[float] = DEFAULT_QUOTE_LATENCY,
        execution_latency: float = DEFAULT_EXECUTION_LATENCY,
        quote_failure_rate: float = 0.0,
        execution_failure_rate: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        if base_rate <= 0:
            msg = f"base_rate must be > 0, got {base_rate}"
            raise ValueError(msg)
        low, high = quote_latency
        if low < 0 or high < low:
            msg = f"quote_latency must be (min, max) with 0 <= min <= max, got {quote_latency}"
            raise ValueError(msg)

        self.name = name
        self.base_rate = base_rate
        self.variance = variance
        self.quote_latency = (float(low), float(high))
        self.execution_latency = execution_latency
        self.quote_failure_rate = quote_failure_rate
        self.execution_failure_rate = execution_failure_rate
        self._rng = rng or random.Random()  # noqa: S311

    async def quote(self, amount: float) -> float:
        """Simulate fetching a quote with network delay and price variance."""
        await asyncio.sleep(self._rng.uniform(*self.quote_latency))

        if self._rng.random() < self.quote_failure_rate:
            raise VenueUnavailableError(self.name)

        drift = self._rng.uniform(-self.variance, self.variance)
        return amount * self.base_rate * (1 + drift)

    async def execute(self, amount: float) -> str:
        """Simulate transaction time, then return a mock settlement signature."""
        await asyncio.sleep(self.execution_latency)

        if self._rng.random() < self.execution_failure_rate:
            raise ExecutionFailedError(self.name)

        suffix = "".join(self._rng.choice(_BASE36) for _ in range(22))
        settlement_id = f"{SETTLEMENT_ID_PREFIX}{suffix}"
        log.debug("Simulated swap executed", venue=self.name, amount=amount)
        return settlement_id


# ==============================================================================
# Quote Router
# ==============================================================================
class QuoteRouter:
    """Routes swaps to the venue offering the best quote.

    Venues keep their registration order; that order breaks quote ties.
    """

    def __init__(self, venues: Iterable[Venue] | None = None) -> None:
        self._venues: dict[str, Venue] = {}
        for venue in venues if venues is not None else [SimulatedVenue(n) for n in DEFAULT_VENUES]:
            self.register(venue)

    @property
    def venue_names(self) -> list[str]:
        """Registered venue names in registration order."""
        return list(self._venues)

    def register(self, venue: Venue) -> None:
        """Register a venue. Re-registering a name replaces it in place."""
        self._venues[venue.name] = venue
        log.debug("Venue registered", venue=venue.name)

    def _get(self, venue: str) -> Venue:
        try:
            return self._venues[venue]
        except KeyError:
            raise UnknownVenueError(venue) from None

    async def quote(self, venue: str, amount: float) -> float:
        """Quote ``amount`` at a single venue."""
        return await self._get(venue).quote(amount)

    async def execute(self, venue: str, amount: float) -> str:
        """Execute ``amount`` at ``venue``, returning the settlement id."""
        return await self._get(venue).execute(amount)

    async def quote_all(self, amount: float) -> list[VenueQuote]:
        """Fetch quotes from every venue concurrently.

        Raises:
            RouterError: If no venue is registered.
            Exception: The first quote failure; the whole step fails.
        """
        if not self._venues:
            msg = "No venues registered"
            raise RouterError(msg)

        names = self.venue_names
        outputs = await asyncio.gather(*(self.quote(name, amount) for name in names))
        quotes = [
            VenueQuote(venue=VenueName(name), amount=amount, output_amount=output)
            for name, output in zip(names, outputs)
        ]
        log.info(
            "Quotes received",
            amount=amount,
            quotes={q.venue: round(q.output_amount, 6) for q in quotes},
        )
        return quotes

    @staticmethod
    def select_best(quotes: Sequence[VenueQuote]) -> VenueQuote:
        """Pick the strictly greatest quote; ties keep the earlier quote."""
        if not quotes:
            msg = "Cannot select a venue from zero quotes"
            raise RouterError(msg)

        best = quotes[0]
        for candidate in quotes[1:]:
            if candidate.output_amount > best.output_amount:
                best = candidate
        return best

    async def best_quote(self, amount: float) -> VenueQuote:
        """Quote every venue and return the winner."""
        return self.select_best(await self.quote_all(amount))
