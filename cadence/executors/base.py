"""Base interface for delayed executors."""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..contracts import ArmedTrigger
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class BaseDelayedExecutor(metaclass=abc.ABCMeta):
    """Invoke a registered handler with a payload once a delay has elapsed.

    Backends only decide where armed triggers live; dispatch and the polling
    loop are shared.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._clock = clock

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    def register(self, name: str, handler: Handler) -> None:
        """Make ``handler`` the target for triggers armed under ``name``."""
        self._handlers[name] = handler

    async def arm_after(
        self, delay: timedelta, handler: str, payload: Dict[str, Any]
    ) -> str:
        """Arm ``handler`` to run with ``payload`` after ``delay``.

        Negative delays fire on the next poll. Returns the trigger id.
        """
        now = self._clock()
        trigger = ArmedTrigger(
            handler=handler,
            payload=payload,
            due_at=now + max(delay, timedelta(0)),
            armed_at=now,
        )
        await self._push(trigger)
        logger.debug(
            f"Armed trigger {trigger.trigger_id} for {handler} due at {trigger.due_at.isoformat()}"
        )
        return trigger.trigger_id

    @abc.abstractmethod
    async def _push(self, trigger: ArmedTrigger) -> None:
        """Persist an armed trigger."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _pop_due(self, now: datetime) -> Optional[ArmedTrigger]:
        """Remove and return the earliest trigger due at ``now``, if any."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pending(self) -> List[ArmedTrigger]:
        """Return armed triggers that have not fired yet, soonest first."""
        raise NotImplementedError

    async def fire_due(self, now: Optional[datetime] = None) -> int:
        """Dispatch every trigger due at ``now``; return how many fired.

        Triggers armed by a handler during this call fire too if they are
        already due.
        """
        now = now or self._clock()
        fired = 0
        while True:
            trigger = await self._pop_due(now)
            if trigger is None:
                return fired
            await self._dispatch(trigger)
            fired += 1

    async def _dispatch(self, trigger: ArmedTrigger) -> None:
        handler = self._handlers.get(trigger.handler)
        if handler is None:
            logger.error(
                f"No handler registered for {trigger.handler}; dropping trigger {trigger.trigger_id}"
            )
            return
        try:
            await handler(trigger.payload)
        except Exception:
            # Handlers persist their own terminal state before raising.
            logger.exception(
                f"Handler {trigger.handler} failed for trigger {trigger.trigger_id}"
            )

    async def run(
        self, lifespan: Optional[float] = None, poll_interval: float = 0.5
    ) -> None:
        """Poll for due triggers until ``lifespan`` seconds have elapsed.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
            poll_interval: Seconds to sleep between polls.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await self.fire_due()
            await asyncio.sleep(poll_interval)
