from typing import Sequence

from agent_test_suite.config.logger import logger
from agent_test_suite.core.exceptions import ExecutionNotFoundError, IllegalTransitionError, TransitionConflictError
from agent_test_suite.core.state_machine import BatchLifecycleController
from agent_test_suite.models.schemas import ReviewUpdate
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.models.test_execution import TestExecution
from agent_test_suite.services.stats_service import StatsService
from agent_test_suite.storage.protocols import Storage


class ReviewService:
    """人工评审服务"""

    def __init__(self, storage: Storage, stats: StatsService, lifecycle: BatchLifecycleController):
        self.storage = storage
        self.stats = stats
        self.lifecycle = lifecycle

    async def update_review(self, execution_id: str, review: ReviewUpdate) -> TestExecution:
        """更新单条执行记录的评审结果"""

        updated = await self.storage.update_review([execution_id], review)
        if not updated:
            raise ExecutionNotFoundError(execution_id)

        execution = updated[0]
        if execution.batch_id:
            await self._refresh_batch(execution.batch_id)

        logger.info(
            "Review updated",
            execution_id=execution_id,
            review_status=review.review_status.value,
        )
        return execution

    async def batch_update_review(self, execution_ids: Sequence[str], review: ReviewUpdate) -> int:
        """批量更新评审结果，返回更新条数"""

        updated = await self.storage.update_review(execution_ids, review)
        batch_ids = {e.batch_id for e in updated if e.batch_id}
        for batch_id in batch_ids:
            await self._refresh_batch(batch_id)

        logger.info("Reviews updated", count=len(updated), batches=len(batch_ids))
        return len(updated)

    async def _refresh_batch(self, batch_id: str) -> None:
        stats = await self.stats.refresh_batch_stats(batch_id)
        if stats.total_cases == 0 or stats.pending_review_count > 0:
            return

        batch = await self.storage.get_batch(batch_id)
        if not batch or BatchStatus(batch.status) != BatchStatus.REVIEWING:
            return

        try:
            await self.lifecycle.transition(batch_id, BatchStatus.COMPLETED)
        except (IllegalTransitionError, TransitionConflictError) as e:
            logger.warning(f"Batch not completed: {e}", batch_id=batch_id)
            return
        logger.info("All cases reviewed, batch completed", batch_id=batch_id)
