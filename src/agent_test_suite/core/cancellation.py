from agent_test_suite.config.logger import logger
from agent_test_suite.core.job_queue import DurableJobQueue
from agent_test_suite.core.progress import ProgressCache
from agent_test_suite.models.schemas import CancelResult


class CancellationController:
    """取消批次：删除未开始的任务，丢弃执行中的任务

    执行中的任务无法中断，跑完后结果照常落库，但不会再计入进度。
    """

    def __init__(self, queue: DurableJobQueue, cache: ProgressCache):
        self.queue = queue
        self.cache = cache

    async def cancel_batch(self, batch_id: str) -> CancelResult:
        result = CancelResult(batch_id=batch_id)

        for job in await self.queue.list_waiting():
            if job.batch_id == batch_id and await self.queue.remove(job):
                result.waiting_removed += 1

        for job in await self.queue.list_delayed():
            if job.batch_id == batch_id and await self.queue.remove(job):
                result.delayed_removed += 1

        for job in await self.queue.list_active():
            if job.batch_id == batch_id and await self.queue.discard(job):
                result.active_discarded += 1

        await self.cache.delete(batch_id)

        logger.info(
            "Batch jobs cancelled",
            batch_id=batch_id,
            waiting_removed=result.waiting_removed,
            delayed_removed=result.delayed_removed,
            active_discarded=result.active_discarded,
        )
        return result
