"""队列任务处理器

把队列、Worker 池和执行器串起来：
- 提交：每个用例入队一个任务（Enqueuer）
- 执行：worker 认领任务后交给执行器，失败抛出 ItemExecutionError 交由队列重试
- 终态：成功或最终失败时向 EventChannel 发布 TerminalEvent，由进度跟踪器消费
"""

from typing import List, Optional, Sequence
from agent_test_suite.config.execution import ExecutionConfig
from agent_test_suite.config.logger import logger
from agent_test_suite.core.events import EventChannel, TerminalEvent
from agent_test_suite.core.exceptions import ItemExecutionError, JobTimeoutError
from agent_test_suite.core.interfaces import ExecutionOutcome, Executor
from agent_test_suite.core.job_queue import DurableJobQueue, JobHandle, JobOptions
from agent_test_suite.core.worker_pool import WorkerPool
from agent_test_suite.models.schemas import TestCaseInput, TestJobData
from agent_test_suite.models.test_execution import ExecutionStatus
from agent_test_suite.storage.protocols import Storage

JOB_NAME = "execute-test"


class BatchJobProcessor:
    """测试任务处理器"""

    def __init__(
        self,
        queue: DurableJobQueue,
        pool: WorkerPool,
        executor: Executor,
        storage: Storage,
        channel: EventChannel,
        config: ExecutionConfig,
    ):
        self.queue = queue
        self.pool = pool
        self.executor = executor
        self.storage = storage
        self.channel = channel
        self.config = config

    def job_options(self, priority: int = 0) -> JobOptions:
        return JobOptions(
            attempts=self.config.attempts,
            backoff_type=self.config.backoff_type,
            backoff_delay_ms=self.config.backoff_delay_ms,
            # 执行器先按 job_timeout_ms 超时并落库，队列超时只做兜底
            timeout_ms=self.config.queue_timeout_ms,
            priority=priority,
            remove_on_complete=self.config.remove_on_complete,
            remove_on_fail=self.config.remove_on_fail,
        )

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """等待队列就绪，回收卡住的任务，启动 worker"""
        await self.queue.wait_until_ready(self.config.ready_timeout)
        recovered = await self.queue.recover_stalled()
        if recovered:
            logger.info("Recovered stalled jobs", count=recovered)

        self.queue.on("active", self._on_active)
        self.queue.on("completed", self._on_completed)
        self.queue.on("failed", self._on_failed)
        self.queue.on("stalled", self._on_stalled)

        self.pool.register_workers(self.config.concurrency, self.handle)
        logger.info(
            "Job processor started",
            queue=self.queue.queue_name,
            concurrency=self.config.concurrency,
        )

    async def stop(self) -> None:
        await self.pool.stop()
        self.queue.off("active", self._on_active)
        self.queue.off("completed", self._on_completed)
        self.queue.off("failed", self._on_failed)
        self.queue.off("stalled", self._on_stalled)

    # ==================== 入队 ====================

    async def add_job(self, item: TestJobData, priority: int = 0) -> JobHandle:
        return await self.queue.enqueue(JOB_NAME, item.model_dump(mode="json"), self.job_options(priority))

    async def add_batch_jobs(self, batch_id: str, cases: Sequence[TestCaseInput]) -> List[str]:
        """批次中每个用例入队一个任务，返回任务 ID"""
        total = len(cases)
        job_ids: List[str] = []
        for index, case in enumerate(cases):
            item = TestJobData.from_case(case, batch_id=batch_id, total_cases=total, case_index=index)
            job = await self.add_job(item)
            job_ids.append(job.id)

        logger.info("Batch jobs enqueued", batch_id=batch_id, count=len(job_ids))
        return job_ids

    # ==================== 执行 ====================

    async def handle(self, job: JobHandle) -> ExecutionOutcome:
        """worker 调用的任务处理函数"""
        item = TestJobData.model_validate(job.data)
        outcome = await self.executor.execute(
            item,
            attempt=job.attempts_made + 1,
            max_attempts=job.attempts,
        )
        if not outcome.succeeded:
            raise ItemExecutionError(outcome)
        return outcome

    # ==================== 队列事件 ====================

    def _on_active(self, job: JobHandle) -> None:
        logger.debug("Job started", job_id=job.id, batch_id=job.batch_id, attempt=job.attempts_made + 1)

    def _on_stalled(self, job: JobHandle) -> None:
        logger.warning("Job stalled", job_id=job.id, batch_id=job.batch_id)

    async def _on_completed(self, job: JobHandle, outcome: ExecutionOutcome) -> None:
        if not job.batch_id:
            return
        await self.channel.publish(
            TerminalEvent(
                batch_id=job.batch_id,
                case_id=job.data.get("case_id", ""),
                job_id=job.id,
                status=ExecutionStatus.SUCCESS.value,
                duration_ms=outcome.duration_ms,
                discarded=job.discarded,
            )
        )

    async def _on_failed(self, job: JobHandle, error: BaseException, attempts_made: int) -> None:
        if not job.is_final_attempt:
            logger.warning(
                "Job attempt failed, will retry",
                job_id=job.id,
                batch_id=job.batch_id,
                attempts_made=attempts_made,
                attempts=job.attempts,
                error=str(error),
            )
            return

        logger.error(
            "Job failed",
            job_id=job.id,
            batch_id=job.batch_id,
            attempts_made=attempts_made,
            discarded=job.discarded,
            error=str(error),
        )
        if not job.batch_id:
            return

        outcome: Optional[ExecutionOutcome] = error.outcome if isinstance(error, ItemExecutionError) else None
        status, duration_ms = self._final_status(job, error, outcome)

        if outcome is None or not outcome.persisted_terminal:
            # 执行器没有写入终态（队列层超时、被丢弃的任务等），这里补写
            await self.storage.upsert_execution_result(
                job.batch_id,
                job.data["case_id"],
                {
                    "execution_status": status,
                    "duration_ms": duration_ms,
                    "error_message": str(error)[:2000],
                },
            )

        await self.channel.publish(
            TerminalEvent(
                batch_id=job.batch_id,
                case_id=job.data.get("case_id", ""),
                job_id=job.id,
                status=status.value,
                duration_ms=duration_ms,
                discarded=job.discarded,
            )
        )

    @staticmethod
    def _final_status(job: JobHandle, error: BaseException, outcome: Optional[ExecutionOutcome]):
        if outcome is not None and outcome.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT):
            return outcome.status, outcome.duration_ms
        if isinstance(error, JobTimeoutError):
            return ExecutionStatus.TIMEOUT, error.timeout_ms
        return ExecutionStatus.FAILURE, outcome.duration_ms if outcome else 0
