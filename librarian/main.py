from __future__ import annotations

import logging

from librarian.core.config import Settings, get_settings
from librarian.logging import configure_logging
from librarian.otel import setup_otel
from librarian.platform.security.gateway import QueryGateway, build_gateway


logger = logging.getLogger("librarian.lifecycle")


def bootstrap(settings: Settings | None = None) -> QueryGateway:
    """Configure logging and tracing for a process and return its gateway."""

    settings = settings or get_settings()
    configure_logging(settings)
    setup_otel(settings)
    gateway = build_gateway(settings)
    logger.info("system.started with %d policies", len(gateway.evaluator.registry.names()))
    return gateway
