from typing import List, Optional, Sequence
from agent_test_suite.config.logger import logger
from agent_test_suite.core.cancellation import CancellationController
from agent_test_suite.core.exceptions import BatchNotFoundError, IllegalTransitionError
from agent_test_suite.core.interfaces import Enqueuer, ExecutionOutcome, Executor
from agent_test_suite.core.job_queue import DurableJobQueue
from agent_test_suite.core.progress import ProgressTracker
from agent_test_suite.core.state_machine import BatchLifecycleController, VALID_TRANSITIONS, can_transition
from agent_test_suite.models.schemas import (
    BatchProgress,
    CancelResult,
    QueueStatus,
    TestCaseInput,
    TestJobData,
)
from agent_test_suite.models.test_batch import BatchSource, BatchStatus, TestBatch
from agent_test_suite.services.stats_service import StatsService
from agent_test_suite.storage.protocols import Storage


class SuiteOrchestrator:
    """测试编排器 - 对外的批次提交、进度查询、取消和队列状态接口"""

    def __init__(
        self,
        storage: Storage,
        lifecycle: BatchLifecycleController,
        stats: StatsService,
        queue: DurableJobQueue,
        enqueuer: Enqueuer,
        executor: Executor,
        tracker: ProgressTracker,
        cancellation: CancellationController,
        scenario: Optional[str] = None,
    ):
        self.storage = storage
        self.lifecycle = lifecycle
        self.stats = stats
        self.queue = queue
        self.enqueuer = enqueuer
        self.executor = executor
        self.tracker = tracker
        self.cancellation = cancellation
        self.scenario = scenario

    async def create_batch(
        self,
        name: str,
        cases: Optional[Sequence[TestCaseInput]] = None,
        source: BatchSource = BatchSource.MANUAL,
        created_by: Optional[str] = None,
    ) -> TestBatch:
        """创建批次，可同时写入待执行的用例"""

        batch = await self.storage.create_batch(name, source=source, created_by=created_by)
        if cases:
            await self.storage.ensure_pending_executions(batch.id, cases, self.scenario)
            stats = await self.stats.refresh_batch_stats(batch.id)
            batch.total_cases = stats.total_cases
        return batch

    async def submit_batch(self, batch_id: str, cases: Sequence[TestCaseInput]) -> None:
        """
        提交批次执行

        1. 校验用例覆盖批次中已有的记录，为每个用例写入 pending 执行记录（已存在的跳过）
        2. 刷新统计，确定 total_cases
        3. 批次进入 running，初始化进度快照
        4. 每个用例入队一个任务
        """

        batch = await self._get_batch(batch_id)
        current = BatchStatus(batch.status)
        if current != BatchStatus.CREATED:
            raise IllegalTransitionError(
                batch_id,
                current.value,
                BatchStatus.RUNNING.value,
                [s.value for s in VALID_TRANSITIONS[current]],
            )
        if not cases:
            raise ValueError("cases must not be empty")

        # 创建批次时已写入的用例必须全部提交，否则批次永远等不到这些用例
        submitted = {case.case_id for case in cases}
        existing = await self.storage.list_executions(batch_id)
        missing = sorted(e.case_id for e in existing if e.case_id not in submitted)
        if missing:
            raise ValueError(f"cases must include every case already in the batch, missing: {', '.join(missing)}")

        await self.storage.ensure_pending_executions(batch_id, cases, self.scenario)
        stats = await self.stats.refresh_batch_stats(batch_id)

        await self.lifecycle.transition(batch_id, BatchStatus.RUNNING)
        await self.tracker.init_batch(batch_id)

        job_ids = await self.enqueuer.add_batch_jobs(batch_id, list(cases))

        logger.info(
            "Batch submitted",
            batch_id=batch_id,
            total_cases=stats.total_cases,
            jobs=len(job_ids),
        )

    async def get_batch_progress(self, batch_id: str) -> BatchProgress:
        return await self.tracker.get_progress(batch_id)

    async def cancel_batch(self, batch_id: str) -> CancelResult:
        """取消批次：清理队列中的任务，批次进入 cancelled"""

        batch = await self._get_batch(batch_id)
        current = BatchStatus(batch.status)
        if not can_transition(current, BatchStatus.CANCELLED):
            raise IllegalTransitionError(
                batch_id,
                current.value,
                BatchStatus.CANCELLED.value,
                [s.value for s in VALID_TRANSITIONS[current]],
            )

        # 丢弃任务之前计数：之后到达的迟到结果不计入批次统计
        counts = await self.storage.count_non_pending_executions(batch_id)
        result = await self.cancellation.cancel_batch(batch_id)
        await self.lifecycle.transition(batch_id, BatchStatus.CANCELLED)
        await self.stats.freeze_batch_stats(batch_id, counts)

        logger.info(f"Batch cancelled: {batch_id}", total_cancelled=result.total_cancelled)
        return result

    async def get_queue_status(self) -> QueueStatus:
        counts = await self.queue.get_job_counts()
        return QueueStatus(**counts)

    async def clean_failed_jobs(self) -> int:
        """清理队列中保留的失败任务"""
        removed = await self.queue.clean_failed()
        logger.info("Failed jobs cleaned", count=removed)
        return removed

    async def execute_case(self, case: TestCaseInput) -> ExecutionOutcome:
        """直接执行单个用例（不属于任何批次，不经过队列）"""
        return await self.executor.execute(TestJobData.from_case(case))

    async def list_batches(self, limit: int = 20, offset: int = 0) -> List[TestBatch]:
        return await self.storage.list_batches(limit=limit, offset=offset)

    async def _get_batch(self, batch_id: str) -> TestBatch:
        batch = await self.storage.get_batch(batch_id)
        if not batch:
            raise BatchNotFoundError(batch_id)
        return batch
