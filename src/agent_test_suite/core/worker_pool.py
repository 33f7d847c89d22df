import asyncio
from typing import List, Optional
from agent_test_suite.config.logger import logger
from agent_test_suite.core.job_queue import DurableJobQueue, JobHandler


class WorkerPool:
    """固定数量的 worker 协程，从队列认领任务并执行

    同时在执行中的任务数不超过 concurrency。
    """

    def __init__(
        self,
        queue: DurableJobQueue,
        poll_interval: float = 1.0,
        stalled_check_interval: float = 30.0,
        shutdown_timeout: float = 30.0,
    ):
        self.queue = queue
        self.poll_interval = poll_interval
        self.stalled_check_interval = stalled_check_interval
        self.shutdown_timeout = shutdown_timeout

        self.concurrency = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._handler: Optional[JobHandler] = None
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stalled_task: Optional[asyncio.Task] = None

    def register_workers(self, concurrency: int, handler: JobHandler) -> None:
        """启动 concurrency 个 worker（需在事件循环中调用）"""
        if self._running:
            raise RuntimeError("Workers already registered")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")

        self.concurrency = concurrency
        self._handler = handler
        self._running = True

        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.queue.queue_name}-worker-{i}")
            for i in range(concurrency)
        ]
        self._stalled_task = asyncio.create_task(self._stalled_loop())

        logger.info(
            "Workers registered",
            queue=self.queue.queue_name,
            concurrency=concurrency,
        )

    async def _worker_loop(self, worker_index: int) -> None:
        while self._running:
            try:
                job = await self.queue.claim()
            except Exception as e:
                logger.error(f"Worker {worker_index} failed to claim job: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                await self.queue.wait_for_job(self.poll_interval)
                continue

            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await self.queue.run_job(job, self._handler)
            except Exception as e:
                # run_job 只在记录结果失败时抛出，任务稍后作为卡住任务回收
                logger.error(
                    f"Worker {worker_index} failed to record job result: {e}",
                    job_id=job.id,
                    exc_info=True,
                )
            finally:
                self.in_flight -= 1

    async def _stalled_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.stalled_check_interval)
            try:
                await self.queue.recover_stalled()
            except Exception as e:
                logger.error(f"Stalled job check failed: {e}")

    async def stop(self) -> None:
        """停止认领新任务，等待执行中的任务结束（超时后取消）"""
        if not self._running:
            return
        self._running = False
        self.queue.wake_all()

        if self._stalled_task:
            self._stalled_task.cancel()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Workers cancelled on shutdown", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        if self._stalled_task:
            await asyncio.gather(self._stalled_task, return_exceptions=True)

        self._tasks = []
        self._stalled_task = None
        logger.info("Workers stopped", queue=self.queue.queue_name)
