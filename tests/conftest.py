"""Shared test doubles."""

from __future__ import annotations

import asyncio


class FixedVenue:
    """Venue with a deterministic quote, optional delay and failure injection."""

    def __init__(
        self,
        name: str,
        rate: float,
        *,
        delay: float = 0.0,
        quote_error: Exception | None = None,
        execute_errors: list[Exception] | None = None,
        settlement_id: str | None = None,
    ) -> None:
        self.name = name
        self.rate = rate
        self.delay = delay
        self.quote_error = quote_error
        # Consumed one per execute() call; once empty executions succeed
        self.execute_errors = list(execute_errors or [])
        self.settlement_id = settlement_id or f"5x{name.lower()}settlement"
        self.quote_calls = 0
        self.executions: list[float] = []

    async def quote(self, amount: float) -> float:
        self.quote_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.quote_error is not None:
            raise self.quote_error
        return amount * self.rate

    async def execute(self, amount: float) -> str:
        self.executions.append(amount)
        if self.execute_errors:
            raise self.execute_errors.pop(0)
        return self.settlement_id
