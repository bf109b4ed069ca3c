"""Wiring of stores, executor, trigger client and handlers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import httpx

from .config import CadenceConfig, load_config
from .constants import EXECUTE_JOB_HANDLER
from .execute import JobExecutionHandler
from .executors import BaseDelayedExecutor, get_executor
from .orchestrator import ScheduleOrchestrator
from .persistence import Repository, get_repository
from .subjects import InMemorySubjectDirectory, SubjectDirectory
from .tracker import WorkflowRunTracker
from .trigger import ExternalTriggerClient
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class Cadence:
    """A fully wired scheduler: every component shares one store and executor."""

    def __init__(
        self,
        config: CadenceConfig,
        repository: Repository,
        executor: BaseDelayedExecutor,
        subjects: SubjectDirectory,
        client: ExternalTriggerClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.repository = repository
        self.executor = executor
        self.subjects = subjects
        self.client = client
        self.orchestrator = ScheduleOrchestrator(
            repository,
            executor,
            subjects,
            config=config.schedule,
            clock=clock,
            claim_timeout=config.executor.claim_timeout,
        )
        self.handler = JobExecutionHandler(
            repository, subjects, client, self.orchestrator, retry=config.retry
        )
        self.tracker = WorkflowRunTracker(repository)
        executor.register(EXECUTE_JOB_HANDLER, self.handler)

    async def run_worker(self, lifespan: Optional[float] = None) -> None:
        """Fire due triggers (and periodically reconcile) until ``lifespan`` elapses."""
        executor_conf = self.config.executor
        await self.executor.connect()
        try:
            if executor_conf.reconcile_on_start:
                await self.orchestrator.reconcile()
            tasks = [
                self.executor.run(
                    lifespan=lifespan, poll_interval=executor_conf.poll_interval
                )
            ]
            if executor_conf.reconcile_interval:
                tasks.append(
                    self._reconcile_periodically(
                        executor_conf.reconcile_interval, lifespan
                    )
                )
            await asyncio.gather(*tasks)
        finally:
            await self.executor.disconnect()

    async def _reconcile_periodically(
        self, interval: float, lifespan: Optional[float]
    ) -> None:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            remaining = None if lifespan is None else lifespan - (loop.time() - start_time)
            if remaining is not None and remaining <= 0:
                break
            await asyncio.sleep(interval if remaining is None else min(interval, remaining))
            if remaining is None or remaining > interval:
                await self.orchestrator.reconcile()


def build_cadence(
    config: Optional[CadenceConfig] = None,
    *,
    repository: Optional[Repository] = None,
    executor: Optional[BaseDelayedExecutor] = None,
    subjects: Optional[SubjectDirectory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Cadence:
    """Build a :class:`Cadence` from configuration, allowing any part to be injected."""

    config = config or load_config()
    repository = repository or get_repository(config.store.database_url, config=config)
    executor = executor or get_executor(config=config, clock=clock)
    subjects = subjects or InMemorySubjectDirectory(config.subjects)
    client = ExternalTriggerClient(config.trigger, http_client=http_client)
    logger.debug(
        f"Built cadence with {type(repository).__name__} and {type(executor).__name__}"
    )
    return Cadence(config, repository, executor, subjects, client, clock=clock)
