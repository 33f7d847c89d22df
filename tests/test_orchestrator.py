import pytest

from agent_test_suite.core.exceptions import BatchNotFoundError, IllegalTransitionError
from agent_test_suite.models.test_batch import BatchSource, BatchStatus
from agent_test_suite.models.test_execution import ExecutionStatus
from support import FakeInvoker, make_cases, wait_for


@pytest.mark.asyncio
async def test_create_batch_with_cases_seeds_pending_rows(make_runtime):
    runtime = await make_runtime(FakeInvoker())

    batch = await runtime.orchestrator.create_batch("imported", make_cases(3), source=BatchSource.IMPORTED)

    assert batch.status == BatchStatus.CREATED
    assert batch.total_cases == 3
    executions = await runtime.storage.list_executions(batch.id)
    assert {e.execution_status for e in executions} == {ExecutionStatus.PENDING}


@pytest.mark.asyncio
async def test_submit_requires_created_batch(make_runtime):
    runtime = await make_runtime(FakeInvoker(delay=0.01))
    batch = await runtime.orchestrator.create_batch("once")
    await runtime.orchestrator.submit_batch(batch.id, make_cases(1))

    with pytest.raises(IllegalTransitionError):
        await runtime.orchestrator.submit_batch(batch.id, make_cases(1))


@pytest.mark.asyncio
async def test_submit_unknown_or_empty(make_runtime):
    runtime = await make_runtime(FakeInvoker())

    with pytest.raises(BatchNotFoundError):
        await runtime.orchestrator.submit_batch("missing", make_cases(1))

    batch = await runtime.orchestrator.create_batch("empty")
    with pytest.raises(ValueError):
        await runtime.orchestrator.submit_batch(batch.id, [])
    assert (await runtime.storage.get_batch(batch.id)).status == BatchStatus.CREATED


@pytest.mark.asyncio
async def test_progress_while_running(make_runtime):
    runtime = await make_runtime(FakeInvoker(delay=0.2), concurrency=1)
    batch = await runtime.orchestrator.create_batch("slow")
    await runtime.orchestrator.submit_batch(batch.id, make_cases(3))

    progress = await runtime.orchestrator.get_batch_progress(batch.id)
    assert progress.status == BatchStatus.RUNNING
    assert progress.total_cases == 3
    assert progress.completed_cases == 0

    async def one_done():
        return (await runtime.orchestrator.get_batch_progress(batch.id)).completed_cases >= 1

    await wait_for(one_done)
    progress = await runtime.orchestrator.get_batch_progress(batch.id)
    assert progress.avg_duration_ms is not None
    assert progress.estimated_remaining_ms is not None


@pytest.mark.asyncio
async def test_execute_case_without_batch(make_runtime):
    runtime = await make_runtime(FakeInvoker())

    outcome = await runtime.orchestrator.execute_case(make_cases(1)[0])

    assert outcome.succeeded
    row = await runtime.storage.get_execution(outcome.execution_id)
    assert row.batch_id is None
    assert (await runtime.orchestrator.get_queue_status()).waiting == 0


@pytest.mark.asyncio
async def test_submit_must_cover_seeded_cases(make_runtime):
    runtime = await make_runtime(FakeInvoker())
    cases = make_cases(3)
    batch = await runtime.orchestrator.create_batch("seeded", cases)

    with pytest.raises(ValueError, match="case-1, case-2"):
        await runtime.orchestrator.submit_batch(batch.id, cases[:1])

    assert (await runtime.storage.get_batch(batch.id)).status == BatchStatus.CREATED
    assert (await runtime.orchestrator.get_queue_status()).waiting == 0

    await runtime.orchestrator.submit_batch(batch.id, cases)

    async def reviewing():
        return (await runtime.storage.get_batch(batch.id)).status == BatchStatus.REVIEWING

    await wait_for(reviewing)
    assert (await runtime.storage.get_batch(batch.id)).total_cases == 3
