from datetime import timedelta

import pytest

from cadence.config import CadenceConfig, ExecutorConfig
from cadence.constants import ARM_NEXT_OCCURRENCE_HANDLER, EXECUTE_JOB_HANDLER
from cadence.contracts import JobStatus
from cadence.runtime import build_cadence


@pytest.fixture
def cadence(repository, executor, subjects, clock, make_http_client):
    http_client, _ = make_http_client([])
    return build_cadence(
        CadenceConfig(executor=ExecutorConfig(poll_interval=0.01, reconcile_interval=None)),
        repository=repository,
        executor=executor,
        subjects=subjects,
        http_client=http_client,
        clock=clock,
    )


def test_handlers_are_registered(cadence):
    assert set(cadence.executor._handlers) == {EXECUTE_JOB_HANDLER, ARM_NEXT_OCCURRENCE_HANDLER}


def test_subjects_come_from_config(repository, executor):
    config = CadenceConfig(subjects=[{"id": "client-9", "owner_email": "nine@example.com"}])
    cadence = build_cadence(config, repository=repository, executor=executor)
    assert cadence.subjects._subjects["client-9"].owner_email == "nine@example.com"


@pytest.mark.asyncio
async def test_run_worker_reconciles_and_fires(cadence, clock):
    await cadence.orchestrator.establish_schedule("client-1")
    cadence.executor._heap.clear()
    clock.advance(timedelta(days=26))

    await cadence.run_worker(lifespan=0.05)

    first, second = await cadence.repository.query_by_subject("client-1")
    assert first.status == JobStatus.COMPLETED
    assert second.status == JobStatus.SCHEDULED


@pytest.mark.asyncio
async def test_periodic_reconcile(repository, executor, subjects, clock, make_http_client, monkeypatch):
    http_client, _ = make_http_client([])
    cadence = build_cadence(
        CadenceConfig(
            executor=ExecutorConfig(
                poll_interval=0.01, reconcile_on_start=False, reconcile_interval=0.01
            )
        ),
        repository=repository,
        executor=executor,
        subjects=subjects,
        http_client=http_client,
        clock=clock,
    )
    calls = []

    async def fake_reconcile(now=None):
        calls.append(now)
        return 0

    monkeypatch.setattr(cadence.orchestrator, "reconcile", fake_reconcile)
    await cadence.run_worker(lifespan=0.1)
    assert len(calls) >= 2
