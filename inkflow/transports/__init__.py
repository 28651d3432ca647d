"""Event transports: an in-process queue and a Redis list backend."""

from __future__ import annotations

import os
from typing import Optional

from ..config import InkflowConfig, RedisConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

TRANSPORT_BACKENDS = ("inmemory", "redis")


def _redis(settings: RedisConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[InkflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``.

    Falls back to ``INKFLOW_TRANSPORT`` and then ``transport.backend`` in the
    loaded configuration. Raises ``ValueError`` for an unknown name.
    """
    config = config or load_config()
    name = (backend or os.getenv("INKFLOW_TRANSPORT") or config.transport.backend).lower()

    if name not in TRANSPORT_BACKENDS:
        raise ValueError(
            f"Unsupported transport backend {name!r}; expected one of {', '.join(TRANSPORT_BACKENDS)}"
        )
    if name == "redis":
        return _redis(config.transport.redis)
    return InMemoryTransport()


__all__ = ["BaseTransport", "InMemoryTransport", "TRANSPORT_BACKENDS", "get_transport"]
