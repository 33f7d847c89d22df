import pytest

from agent_test_suite.core.events import EventChannel, TerminalEvent
from agent_test_suite.core.exceptions import BatchNotFoundError
from agent_test_suite.core.progress import InMemoryProgressCache, ProgressSnapshot, ProgressTracker
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.models.test_execution import ExecutionStatus
from support import FakeClock, make_cases


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryProgressCache(ttl=10, clock=clock)


@pytest.fixture
def tracker(storage, lifecycle, stats, cache):
    return ProgressTracker(storage, lifecycle, stats, cache, EventChannel())


async def _running_batch(storage, lifecycle, stats, count=4):
    batch = await storage.create_batch("progress")
    await storage.ensure_pending_executions(batch.id, make_cases(count))
    await stats.refresh_batch_stats(batch.id)
    await lifecycle.transition(batch.id, BatchStatus.RUNNING)
    return batch


async def _finish(storage, batch_id, case_id, status=ExecutionStatus.SUCCESS):
    await storage.upsert_execution_result(batch_id, case_id, {"execution_status": status, "duration_ms": 100})


def _event(batch_id, case_id, status="success", duration_ms=100, discarded=False):
    return TerminalEvent(
        batch_id=batch_id,
        case_id=case_id,
        job_id=f"job-{case_id}",
        status=status,
        duration_ms=duration_ms,
        discarded=discarded,
    )


@pytest.mark.asyncio
async def test_cache_entries_expire(cache, clock):
    await cache.set("b1", ProgressSnapshot(completed_cases=1))
    assert (await cache.get("b1")).completed_cases == 1

    clock.advance(11)
    assert await cache.get("b1") is None


@pytest.mark.asyncio
async def test_progress_from_snapshot_with_eta(storage, lifecycle, stats, tracker):
    batch = await _running_batch(storage, lifecycle, stats, count=4)
    await tracker.init_batch(batch.id)

    await _finish(storage, batch.id, "case-0")
    await tracker.on_item_terminal(_event(batch.id, "case-0", duration_ms=100))
    await _finish(storage, batch.id, "case-1", ExecutionStatus.FAILURE)
    await tracker.on_item_terminal(_event(batch.id, "case-1", status="failure", duration_ms=300))

    progress = await tracker.get_progress(batch.id)
    assert progress.status == BatchStatus.RUNNING
    assert progress.total_cases == 4
    assert progress.completed_cases == 2
    assert progress.success_count == 1
    assert progress.failure_count == 1
    assert progress.progress_percent == 50
    assert progress.avg_duration_ms == 200
    assert progress.estimated_remaining_ms == 400


@pytest.mark.asyncio
async def test_progress_falls_back_to_durable_counts(storage, lifecycle, stats, tracker):
    batch = await _running_batch(storage, lifecycle, stats, count=4)
    await _finish(storage, batch.id, "case-0")
    await _finish(storage, batch.id, "case-1", ExecutionStatus.TIMEOUT)

    progress = await tracker.get_progress(batch.id)
    assert progress.completed_cases == 2
    assert progress.success_count == 1
    assert progress.failure_count == 1
    assert progress.estimated_remaining_ms is None


@pytest.mark.asyncio
async def test_completed_cases_clamped_to_total(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=2)
    await cache.set(batch.id, ProgressSnapshot(completed_cases=5, success_count=5, durations=[10]))

    progress = await tracker.get_progress(batch.id)
    assert progress.completed_cases == 2
    assert progress.progress_percent == 100
    assert progress.estimated_remaining_ms == 0


@pytest.mark.asyncio
async def test_completion_requires_durable_terminal_rows(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=2)
    # 快照说全部完成，数据库里还没有：不能进入 reviewing
    await cache.set(batch.id, ProgressSnapshot(completed_cases=2, success_count=2))
    assert not await tracker.check_batch_completion(batch.id)
    assert (await storage.get_batch(batch.id)).status == BatchStatus.RUNNING

    await _finish(storage, batch.id, "case-0")
    await _finish(storage, batch.id, "case-1")
    assert await tracker.check_batch_completion(batch.id)

    stored = await storage.get_batch(batch.id)
    assert stored.status == BatchStatus.REVIEWING
    assert stored.executed_count == 2
    assert await cache.get(batch.id) is None


@pytest.mark.asyncio
async def test_last_terminal_event_moves_batch_to_reviewing(storage, lifecycle, stats, tracker):
    batch = await _running_batch(storage, lifecycle, stats, count=2)
    await tracker.init_batch(batch.id)

    for case_id in ("case-0", "case-1"):
        await _finish(storage, batch.id, case_id)
        await tracker.on_item_terminal(_event(batch.id, case_id))

    assert (await storage.get_batch(batch.id)).status == BatchStatus.REVIEWING


@pytest.mark.asyncio
async def test_cancelled_batch_is_not_reconciled(storage, lifecycle, stats, tracker):
    batch = await _running_batch(storage, lifecycle, stats, count=1)
    await lifecycle.transition(batch.id, BatchStatus.CANCELLED)
    await _finish(storage, batch.id, "case-0")

    assert not await tracker.check_batch_completion(batch.id)
    assert (await storage.get_batch(batch.id)).status == BatchStatus.CANCELLED


@pytest.mark.asyncio
async def test_discarded_events_do_not_touch_counters(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=3)
    await tracker.init_batch(batch.id)

    await tracker.on_item_terminal(_event(batch.id, "case-0", discarded=True))

    snapshot = await cache.get(batch.id)
    assert snapshot.completed_cases == 0
    assert snapshot.durations == []


@pytest.mark.asyncio
async def test_missing_snapshot_is_rebuilt_from_store(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=3)
    await _finish(storage, batch.id, "case-0")
    await _finish(storage, batch.id, "case-1")

    await tracker.on_item_terminal(_event(batch.id, "case-1"))

    snapshot = await cache.get(batch.id)
    assert snapshot.completed_cases == 2
    assert snapshot.success_count == 2


@pytest.mark.asyncio
async def test_channel_consumer_processes_events(storage, lifecycle, stats, tracker):
    batch = await _running_batch(storage, lifecycle, stats, count=1)
    await tracker.init_batch(batch.id)
    tracker.start()
    try:
        await _finish(storage, batch.id, "case-0")
        await tracker.channel.publish(_event(batch.id, "case-0"))
        await tracker.drain()
    finally:
        await tracker.stop()

    assert (await storage.get_batch(batch.id)).status == BatchStatus.REVIEWING


@pytest.mark.asyncio
async def test_unknown_batch_progress(tracker):
    with pytest.raises(BatchNotFoundError):
        await tracker.get_progress("missing")


@pytest.mark.asyncio
async def test_result_after_cancel_does_not_recreate_snapshot(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=2)
    await lifecycle.transition(batch.id, BatchStatus.CANCELLED)
    await _finish(storage, batch.id, "case-0")

    # 取消前就已进入通道的事件，没有 discarded 标记
    await tracker.on_item_terminal(_event(batch.id, "case-0"))

    assert await cache.get(batch.id) is None


@pytest.mark.asyncio
async def test_cancelled_batch_progress_uses_frozen_stats(storage, lifecycle, stats, tracker, cache):
    batch = await _running_batch(storage, lifecycle, stats, count=3)
    await _finish(storage, batch.id, "case-0")
    counts = await storage.count_non_pending_executions(batch.id)
    await lifecycle.transition(batch.id, BatchStatus.CANCELLED)
    await stats.freeze_batch_stats(batch.id, counts)

    # 取消后落库的迟到结果，以及之后的统计刷新
    await _finish(storage, batch.id, "case-1")
    await _finish(storage, batch.id, "case-2", ExecutionStatus.FAILURE)
    await stats.refresh_batch_stats(batch.id)
    await cache.set(batch.id, ProgressSnapshot(completed_cases=3, success_count=2, failure_count=1))

    progress = await tracker.get_progress(batch.id)
    assert progress.status == BatchStatus.CANCELLED
    assert (progress.completed_cases, progress.success_count, progress.failure_count) == (1, 1, 0)
    assert progress.estimated_remaining_ms is None
