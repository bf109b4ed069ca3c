"""Delayed executor factory and initialization."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Callable, Optional

from ..config import CadenceConfig, load_config
from ..utils.clock import utcnow
from .base import BaseDelayedExecutor
from .inmemory import InMemoryDelayedExecutor


def get_executor(
    backend: Optional[str] = None,
    config: Optional[CadenceConfig] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BaseDelayedExecutor:
    """Factory function to get the configured delayed executor."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("CADENCE_EXECUTOR")
        or config.executor.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryDelayedExecutor(clock=clock)
    elif backend == "redis":
        from .redis import RedisDelayedExecutor

        redis_conf = config.executor.redis
        return RedisDelayedExecutor(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key=redis_conf.key,
            clock=clock,
        )
    else:
        raise ValueError(f"Unsupported executor backend: {backend}")


__all__ = ["BaseDelayedExecutor", "InMemoryDelayedExecutor", "get_executor"]
