"""Process-wide shared clients.

The order store, event bus, work queue and quote router are built once at
process start (from Hydra config) and passed explicitly to the API, the
status relay and the worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from hydra.utils import instantiate
from omegaconf import OmegaConf

from orderflow_core.execution.events import MemoryEventBus
from orderflow_core.execution.queue import JobOptions, MemoryWorkQueue
from orderflow_core.execution.router import QuoteRouter
from orderflow_core.execution.store import MemoryOrderStore

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from orderflow_core.execution.events import EventBus
    from orderflow_core.execution.queue import WorkQueue
    from orderflow_core.execution.store import OrderStore

log = structlog.get_logger()


@dataclass
class Services:
    """Shared clients injected into every component."""

    store: OrderStore
    bus: EventBus
    queue: WorkQueue
    router: QuoteRouter
    job_options: JobOptions = field(default_factory=JobOptions)

    async def health(self) -> dict[str, Any]:
        """Backend health summary for the /health endpoint."""
        report: dict[str, Any] = {"store": self.store.health_check()}
        if hasattr(self.queue, "health_check"):
            report["queue"] = await self.queue.health_check()
        if hasattr(self.bus, "health_check"):
            report["bus"] = await self.bus.health_check()
        report["venues"] = self.router.venue_names
        return report

    async def aclose(self) -> None:
        """Release transport resources."""
        await self.bus.close()
        await self.queue.close()
        if hasattr(self.store, "close"):
            self.store.close()
        log.info("Shared clients closed")


def build_services(cfg: DictConfig) -> Services:
    """Instantiate shared clients from the ``store``/``bus``/``queue``/``router`` groups."""
    job_options_cfg = cfg.get("job_options")
    job_options = (
        JobOptions(**OmegaConf.to_container(job_options_cfg, resolve=True))  # type: ignore[arg-type]
        if job_options_cfg
        else JobOptions()
    )

    services = Services(
        store=instantiate(cfg.store),
        bus=instantiate(cfg.bus),
        queue=instantiate(cfg.queue),
        router=instantiate(cfg.router, _convert_="all"),
        job_options=job_options,
    )
    log.info(
        "Shared clients ready",
        store=type(services.store).__name__,
        bus=type(services.bus).__name__,
        queue=type(services.queue).__name__,
        venues=services.router.venue_names,
    )
    return services


def memory_services(
    router: QuoteRouter | None = None,
    job_options: JobOptions | None = None,
) -> Services:
    """Single-process services backed by in-memory store, bus and queue."""
    return Services(
        store=MemoryOrderStore(),
        bus=MemoryEventBus(),
        queue=MemoryWorkQueue(),
        router=router or QuoteRouter(),
        job_options=job_options or JobOptions(),
    )
