# brokerlink/main.py
"""
Broker integration application factory.

Creates a FastAPI application exposing the configured MQTT and Kafka
integrations. Pooled connections are opened lazily on first use and
closed when the application shuts down.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from brokerlink.api.discovery import router as discovery_router
from brokerlink.api.integrations import router as integrations_router
from brokerlink.core.adapters.registry import AdapterRegistry, build_adapter_registry
from brokerlink.core.config import Settings, settings
from brokerlink.core.integrations.config import load_integrations_config
from brokerlink.core.integrations.registry import IntegrationsRegistry
from brokerlink.core.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    adapters: AdapterRegistry = app.state.adapters

    yield

    logger.info("Closing pooled broker connections...")
    await adapters.close_all()


def create_app(
    cfg: Settings | None = None,
    adapters: AdapterRegistry | None = None,
) -> FastAPI:
    """Build and wire the broker integration FastAPI application."""
    cfg = cfg or settings
    configure_logging(cfg.log_level)
    logger.info("Creating broker integration application (env=%s)", cfg.app_env)

    try:
        integrations = IntegrationsRegistry.from_config(
            load_integrations_config(cfg.integrations_config_paths)
        )
    except Exception:
        logger.exception("Failed to load integrations")
        raise

    adapters = adapters or build_adapter_registry(cfg)

    app = FastAPI(
        title="brokerlink",
        version="0.1.0",
        description="Pooled MQTT and Kafka integrations",
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.integrations = integrations
    app.state.adapters = adapters

    app.include_router(discovery_router)
    app.include_router(integrations_router, prefix="/integrations", tags=["integrations"])

    logger.info(
        "Application ready: %d integration(s), adapters=%s",
        len(integrations),
        adapters.list(),
    )

    return app
