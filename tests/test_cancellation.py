import asyncio

import pytest

from agent_test_suite.core.exceptions import BatchNotFoundError, IllegalTransitionError
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.models.test_execution import ExecutionStatus
from support import FakeInvoker, make_cases, wait_for


def _stats_view(batch):
    return (
        batch.total_cases,
        batch.executed_count,
        batch.success_count,
        batch.failure_count,
        batch.passed_count,
        batch.failed_count,
        batch.pending_review_count,
        batch.pass_rate,
        batch.avg_duration_ms,
    )


@pytest.mark.asyncio
async def test_cancel_mid_batch(make_runtime):
    cases = make_cases(10)
    gates = {c.case_id: asyncio.Event() for c in cases}
    for case in cases[:4]:
        gates[case.case_id].set()
    invoker = FakeInvoker(gates=gates)
    runtime = await make_runtime(invoker, concurrency=2)
    orchestrator = runtime.orchestrator

    batch = await orchestrator.create_batch("cancel me")
    await orchestrator.submit_batch(batch.id, cases)

    async def four_done_two_active():
        counts = await runtime.storage.count_non_pending_executions(batch.id)
        return counts.success == 4 and {"case-4", "case-5"} <= set(invoker.calls)

    await wait_for(four_done_two_active)
    await runtime.tracker.drain()

    result = await orchestrator.cancel_batch(batch.id)

    assert result.waiting_removed == 4
    assert result.delayed_removed == 0
    assert result.active_discarded == 2
    assert result.total_cancelled == 6

    cancelled = await runtime.storage.get_batch(batch.id)
    assert cancelled.status == BatchStatus.CANCELLED
    assert cancelled.completed_at is not None
    stats_before = _stats_view(cancelled)
    progress_before = await orchestrator.get_batch_progress(batch.id)
    assert progress_before.status == BatchStatus.CANCELLED
    assert (progress_before.completed_cases, progress_before.success_count, progress_before.failure_count) == (4, 4, 0)

    # 放行被丢弃的两个任务，等它们跑完
    gates["case-4"].set()
    gates["case-5"].set()

    async def queue_idle():
        return not await runtime.queue.list_active()

    await wait_for(queue_idle)
    await runtime.tracker.drain()

    stored = await runtime.storage.get_batch(batch.id)
    assert stored.status == BatchStatus.CANCELLED
    assert _stats_view(stored) == stats_before
    # 被丢弃任务的迟到结果不改变进度
    assert await orchestrator.get_batch_progress(batch.id) == progress_before

    by_case = {e.case_id: e for e in await runtime.storage.list_executions(batch.id)}
    # 迟到的结果照常落库
    assert by_case["case-4"].execution_status == ExecutionStatus.SUCCESS
    assert by_case["case-5"].execution_status == ExecutionStatus.SUCCESS
    assert all(by_case[f"case-{i}"].execution_status == ExecutionStatus.PENDING for i in range(6, 10))
    assert not {"case-6", "case-7", "case-8", "case-9"} & set(invoker.calls)

    status = await orchestrator.get_queue_status()
    assert status.waiting == 0
    assert status.active == 0


@pytest.mark.asyncio
async def test_cancel_removes_delayed_retries(make_runtime):
    cases = make_cases(1)
    invoker = FakeInvoker(fail_cases={cases[0].case_id})
    runtime = await make_runtime(invoker, attempts=3, backoff_delay_ms=60_000)

    batch = await runtime.orchestrator.create_batch("retrying")
    await runtime.orchestrator.submit_batch(batch.id, cases)

    async def retry_scheduled():
        return len(await runtime.queue.list_delayed()) == 1

    await wait_for(retry_scheduled)

    result = await runtime.orchestrator.cancel_batch(batch.id)
    assert (result.waiting_removed, result.delayed_removed, result.active_discarded) == (0, 1, 0)
    assert (await runtime.orchestrator.get_queue_status()).delayed == 0


@pytest.mark.asyncio
async def test_cancel_finished_batch_is_rejected(make_runtime):
    runtime = await make_runtime(FakeInvoker())
    batch = await runtime.orchestrator.create_batch("done")
    await runtime.orchestrator.submit_batch(batch.id, make_cases(1))

    async def reviewing():
        return (await runtime.storage.get_batch(batch.id)).status == BatchStatus.REVIEWING

    await wait_for(reviewing)
    await runtime.lifecycle.transition(batch.id, BatchStatus.COMPLETED)

    with pytest.raises(IllegalTransitionError):
        await runtime.orchestrator.cancel_batch(batch.id)


@pytest.mark.asyncio
async def test_cancel_unknown_batch(make_runtime):
    runtime = await make_runtime(FakeInvoker())
    with pytest.raises(BatchNotFoundError):
        await runtime.orchestrator.cancel_batch("missing")
