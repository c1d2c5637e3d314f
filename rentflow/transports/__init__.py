"""Domain-event transports selected from the ``transport`` config section."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import RentflowConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

TRANSPORT_ENV = "RENTFLOW_TRANSPORT"


def _inmemory(settings: TransportConfig) -> BaseTransport:
    return InMemoryTransport(poll_interval=settings.poll_interval)


def _redis(settings: TransportConfig) -> BaseTransport:
    # imported lazily so the in-memory backend works without a redis server
    from .redis import RedisTransport

    return RedisTransport(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
    )


_BACKENDS: Dict[str, Callable[[TransportConfig], BaseTransport]] = {
    "inmemory": _inmemory,
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[RentflowConfig] = None
) -> BaseTransport:
    """Build the domain-event transport.

    ``backend`` wins over the ``RENTFLOW_TRANSPORT`` env var, which wins over
    ``transport.backend`` in the config.
    """
    settings = (config or load_config()).transport
    name = (backend or os.getenv(TRANSPORT_ENV) or settings.backend).lower()
    try:
        build = _BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported transport backend: {name} (expected one of {sorted(_BACKENDS)})"
        ) from None
    return build(settings)


__all__ = ["BaseTransport", "InMemoryTransport", "TRANSPORT_ENV", "get_transport"]
