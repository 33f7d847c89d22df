"""批次进度跟踪

进度快照只是缓存（带 TTL，可能过期或丢失），用于展示和估算剩余时间；
批次是否执行完成只看数据库里的执行记录。
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from agent_test_suite.config.logger import logger
from agent_test_suite.core.events import EventChannel, TerminalEvent
from agent_test_suite.core.exceptions import BatchNotFoundError, IllegalTransitionError, TransitionConflictError
from agent_test_suite.core.state_machine import BatchLifecycleController
from agent_test_suite.models.schemas import BatchProgress
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.services.stats_service import StatsService
from agent_test_suite.storage.protocols import Storage


@dataclass
class ProgressSnapshot:
    completed_cases: int = 0
    success_count: int = 0
    failure_count: int = 0
    durations: List[int] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    @property
    def avg_duration_ms(self) -> Optional[int]:
        if not self.durations:
            return None
        return int(round(sum(self.durations) / len(self.durations)))


class ProgressCache(Protocol):
    async def get(self, batch_id: str) -> Optional[ProgressSnapshot]: ...

    async def set(self, batch_id: str, snapshot: ProgressSnapshot) -> None: ...

    async def delete(self, batch_id: str) -> None: ...


class InMemoryProgressCache:
    """进程内的进度缓存，条目到期自动失效"""

    def __init__(self, ttl: int = 3600, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._items: Dict[str, Tuple[ProgressSnapshot, float]] = {}

    def _purge_expired(self, batch_id: str) -> None:
        item = self._items.get(batch_id)
        if item is None:
            return
        _, expires_at = item
        if self._clock() >= expires_at:
            self._items.pop(batch_id, None)

    async def get(self, batch_id: str) -> Optional[ProgressSnapshot]:
        self._purge_expired(batch_id)
        item = self._items.get(batch_id)
        if item is None:
            return None
        return item[0]

    async def set(self, batch_id: str, snapshot: ProgressSnapshot) -> None:
        snapshot.updated_at = self._clock()
        self._items[batch_id] = (snapshot, self._clock() + max(1, int(self.ttl)))

    async def delete(self, batch_id: str) -> None:
        self._items.pop(batch_id, None)


class ProgressTracker:
    """消费终态事件，维护进度快照，判断批次是否执行完成"""

    def __init__(
        self,
        storage: Storage,
        lifecycle: BatchLifecycleController,
        stats: StatsService,
        cache: ProgressCache,
        channel: EventChannel,
    ):
        self.storage = storage
        self.lifecycle = lifecycle
        self.stats = stats
        self.cache = cache
        self.channel = channel
        self._task: Optional[asyncio.Task] = None

    # ==================== 事件消费 ====================

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def run(self) -> None:
        """逐条处理 EventChannel 中的终态事件"""
        while True:
            event = await self.channel.receive()
            try:
                await self.on_item_terminal(event)
            except Exception as e:
                logger.error(
                    f"Failed to handle terminal event: {e}",
                    batch_id=event.batch_id,
                    job_id=event.job_id,
                    exc_info=True,
                )
            finally:
                self.channel.task_done()

    async def drain(self) -> None:
        """等待已发布的事件全部处理完"""
        await self.channel.join()

    # ==================== 进度 ====================

    async def init_batch(self, batch_id: str) -> None:
        await self.cache.set(batch_id, ProgressSnapshot())

    async def clear_batch(self, batch_id: str) -> None:
        await self.cache.delete(batch_id)

    async def on_item_terminal(self, event: TerminalEvent) -> None:
        if event.discarded:
            # 已取消批次的迟到结果：记录已落库，但不计入进度
            logger.debug("Ignoring discarded job result", batch_id=event.batch_id, job_id=event.job_id)
            return

        batch = await self.storage.get_batch(event.batch_id)
        if not batch or BatchStatus(batch.status) != BatchStatus.RUNNING:
            # 批次已取消或已结束，快照已删除，不再重建
            logger.debug("Ignoring result for batch not running", batch_id=event.batch_id, job_id=event.job_id)
            return

        snapshot = await self.cache.get(event.batch_id)
        if snapshot is None:
            # 快照过期或进程重启：从数据库重建（已包含本条结果）
            counts = await self.storage.count_non_pending_executions(event.batch_id)
            snapshot = ProgressSnapshot(
                completed_cases=counts.total,
                success_count=counts.success,
                failure_count=counts.failure + counts.timeout,
            )
        else:
            snapshot.completed_cases += 1
            if event.succeeded:
                snapshot.success_count += 1
            else:
                snapshot.failure_count += 1
        snapshot.durations.append(event.duration_ms)
        await self.cache.set(event.batch_id, snapshot)

        await self.check_batch_completion(event.batch_id)

    async def check_batch_completion(self, batch_id: str) -> bool:
        """所有用例都到终态后：刷新统计，批次进入 reviewing

        只依据数据库计数，不依赖进度快照。
        """
        batch = await self.storage.get_batch(batch_id)
        if not batch:
            logger.warning("Batch not found for completion check", batch_id=batch_id)
            return False

        status = BatchStatus(batch.status)
        if status != BatchStatus.RUNNING:
            # 已取消、或已进入 reviewing 的批次不再处理
            return False

        counts = await self.storage.count_non_pending_executions(batch_id)
        if counts.total < batch.total_cases:
            return False

        await self.stats.refresh_batch_stats(batch_id)
        try:
            await self.lifecycle.transition(batch_id, BatchStatus.REVIEWING)
        except (IllegalTransitionError, TransitionConflictError) as e:
            # 期间被取消或被并发修改
            logger.warning(f"Batch completion skipped: {e}", batch_id=batch_id)
            return False

        await self.cache.delete(batch_id)
        logger.info(
            "Batch execution completed",
            batch_id=batch_id,
            total_cases=batch.total_cases,
            success=counts.success,
            failure=counts.failure,
            timeout=counts.timeout,
        )
        return True

    async def get_progress(self, batch_id: str) -> BatchProgress:
        batch = await self.storage.get_batch(batch_id)
        if not batch:
            raise BatchNotFoundError(batch_id)

        total = batch.total_cases or 0
        status = BatchStatus(batch.status)
        snapshot = await self.cache.get(batch_id) if status == BatchStatus.RUNNING else None
        if snapshot is not None:
            completed = snapshot.completed_cases
            success = snapshot.success_count
            failure = snapshot.failure_count
            avg_duration = snapshot.avg_duration_ms
        elif status != BatchStatus.RUNNING:
            # 批次统计在完成或取消时写入，取消后的迟到结果不会改变它
            completed = batch.executed_count or 0
            success = batch.success_count or 0
            failure = batch.failure_count or 0
            avg_duration = None
        else:
            counts = await self.storage.count_non_pending_executions(batch_id)
            completed = counts.total
            success = counts.success
            failure = counts.failure + counts.timeout
            avg_duration = None

        completed = min(completed, total)
        remaining = total - completed
        estimated_remaining_ms = remaining * avg_duration if avg_duration is not None else None

        return BatchProgress(
            batch_id=batch_id,
            status=status,
            total_cases=total,
            completed_cases=completed,
            success_count=success,
            failure_count=failure,
            progress_percent=int(round(completed * 100 / total)) if total else 0,
            estimated_remaining_ms=estimated_remaining_ms,
            avg_duration_ms=avg_duration,
        )
