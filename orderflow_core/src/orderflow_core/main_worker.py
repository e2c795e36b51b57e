"""OrderFlow Worker Entrypoint.

Runs the swap worker as its own process: jobs are pulled from the durable
work queue, driven through the order state machine, persisted to the order
store and announced on the event bus. Configuration comes from Hydra
(conf/worker.yaml).

Usage:
    # Default config (Redis-backed store, bus and queue)
    python -m orderflow_core.main_worker

    # More jobs in flight per process
    python -m orderflow_core.main_worker worker.concurrency=10

    # Faster simulated transaction builds
    python -m orderflow_core.main_worker worker.build_delay=0.1

SIGINT and SIGTERM stop intake; jobs already in flight run to completion.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import hydra
import structlog
from omegaconf import DictConfig, OmegaConf

from orderflow_core.execution.queue import QueueConsumer
from orderflow_core.execution.worker import SwapWorker
from orderflow_core.main import configure_from_cfg
from orderflow_core.services import build_services

if TYPE_CHECKING:
    from orderflow_core.services import Services

log = structlog.get_logger()


class WorkerService:
    """Swap worker process: work queue -> state machine -> store + event bus."""

    def __init__(self, cfg: DictConfig, services: Services | None = None) -> None:
        """Initialize the worker from a Hydra config."""
        self.cfg = cfg
        worker_cfg = cfg.get("worker") or {}
        self.concurrency: int = int(worker_cfg.get("concurrency", 4))
        self.poll_timeout: float = float(worker_cfg.get("poll_timeout", 1.0))
        self.build_delay: float = float(worker_cfg.get("build_delay", 0.5))

        self.services = services or build_services(cfg)
        self.worker = SwapWorker(
            self.services.store,
            self.services.bus,
            self.services.router,
            build_delay=self.build_delay,
        )
        self.consumer = QueueConsumer(
            self.services.queue,
            self.worker.process,
            concurrency=self.concurrency,
            poll_timeout=self.poll_timeout,
        )

    def stop(self) -> None:
        log.info("Shutdown requested")
        self.consumer.stop()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not available on every platform/loop
                log.debug("Signal handler unavailable", signal=sig.name)

    async def run(self) -> None:
        """Consume jobs until stopped; in-flight orders finish before exit."""
        self._install_signal_handlers()
        log.info(
            "Worker started",
            concurrency=self.concurrency,
            venues=self.services.router.venue_names,
        )
        try:
            await self.consumer.run()
        except Exception:
            log.exception("Fatal Crash in Worker Loop")
            raise
        finally:
            log.info("Shutting down services...")
            await self.services.aclose()


@hydra.main(version_base=None, config_path="../../../conf", config_name="worker")
def app(cfg: DictConfig) -> None:
    """Hydra entrypoint for the swap worker."""
    configure_from_cfg(cfg)
    log.info(
        "Hydra configuration loaded",
        config=OmegaConf.to_container(cfg, resolve=True),
    )
    service = WorkerService(cfg)
    asyncio.run(service.run())


if __name__ == "__main__":
    app()
