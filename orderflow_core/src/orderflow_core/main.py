"""OrderFlow API Entrypoint.

This module bootstraps the ingestion API and status WebSocket using Hydra for
configuration management. All runtime parameters are externalized to YAML
files in conf/.

Usage:
    # Default config (Redis-backed store, bus and queue)
    python -m orderflow_core.main

    # Override environment and port
    python -m orderflow_core.main env=prod server.port=8080

    # Single process on memory backends with an in-process worker
    python -m orderflow_core.main store=memory bus=memory queue=memory worker.embedded=true
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import hydra
import structlog
import uvicorn
from omegaconf import OmegaConf

from orderflow_core.api.app import APP_NAME, APP_VERSION, create_app
from orderflow_core.execution.queue import QueueConsumer
from orderflow_core.execution.worker import SwapWorker
from orderflow_core.services import build_services

if TYPE_CHECKING:
    from omegaconf import DictConfig


# ==============================================================================
# Logging Configuration
# ==============================================================================
def configure_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog for production-grade logging.

    Design Decisions:
    - JSON output for log aggregation (ELK, Datadog, etc.)
    - Context variables carry job_id/order_id through a job attempt
    - ISO timestamps for timezone-aware logs

    Args:
        json_output: If True, output JSON. If False, output human-readable logs.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    # Set stdlib logging level (structlog wraps stdlib)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Processor chain: each processor transforms the event dict
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output:
        # Production: JSON for machine parsing
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        # Development: colored console output
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_cfg(cfg: DictConfig) -> None:
    """Derive logging mode from the ``env`` and ``debug`` config keys."""
    is_debug: bool = bool(cfg.get("debug", False))
    env: str = str(cfg.get("env", "dev"))
    log_level: str = "DEBUG" if is_debug else "INFO"
    json_output: bool = env != "dev"  # Human-readable in dev, JSON in prod/staging
    configure_logging(json_output=json_output, log_level=log_level)


# ==============================================================================
# Application Bootstrap
# ==============================================================================
@hydra.main(version_base=None, config_path="../../../conf", config_name="api")
def main(cfg: DictConfig) -> None:
    """API entrypoint with Hydra configuration injection.

    Args:
        cfg: Resolved configuration from Hydra.
    """
    configure_from_cfg(cfg)
    log = structlog.get_logger()

    log.info(
        "Initializing application",
        app=APP_NAME,
        version=APP_VERSION,
        env=cfg.get("env", "dev"),
    )

    # Validate config resolution (catch missing interpolations)
    try:
        OmegaConf.resolve(cfg)
    except Exception as e:
        log.error("Configuration resolution failed", error=str(e))
        raise

    if cfg.get("debug", False):
        log.debug("Resolved configuration", config=OmegaConf.to_yaml(cfg))

    services = build_services(cfg)

    consumer = None
    worker_cfg = cfg.get("worker")
    if worker_cfg is not None and worker_cfg.get("embedded", False):
        worker = SwapWorker(
            services.store,
            services.bus,
            services.router,
            build_delay=float(worker_cfg.build_delay),
        )
        consumer = QueueConsumer(
            services.queue,
            worker.process,
            concurrency=int(worker_cfg.concurrency),
            poll_timeout=float(worker_cfg.poll_timeout),
        )
        log.info("Embedded worker enabled", concurrency=consumer.concurrency)

    cors_origins = cfg.server.get("cors_origins")
    app = create_app(
        services,
        consumer=consumer,
        cors_origins=list(cors_origins) if cors_origins else None,
    )

    log.info("System ready", host=cfg.server.host, port=cfg.server.port)
    uvicorn.run(
        app,
        host=str(cfg.server.host),
        port=int(cfg.server.port),
        log_config=None,
    )


if __name__ == "__main__":
    main()
