from typing import Any, Dict, List, Optional, Sequence

from agent_test_suite.config.logger import logger
from agent_test_suite.models.schemas import BatchStats, CategoryStats, FailureReasonStats
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.models.test_execution import (
    ExecutionStatus,
    ReviewStatus,
    TERMINAL_EXECUTION_STATUSES,
    TestExecution,
)
from agent_test_suite.storage.protocols import ExecutionCounts, ExecutionFilters, Storage

UNCATEGORIZED = "未分类"


class StatsService:
    """批次统计服务

    统计值总是从执行记录重新计算，不读进度缓存。
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    # ---------- 批次统计 ----------

    def compute_stats(self, executions: Sequence[TestExecution]) -> BatchStats:
        """从执行记录计算统计（纯计算，不查数据库）"""

        total_cases = len(executions)
        executed_count = sum(1 for e in executions if e.execution_status in TERMINAL_EXECUTION_STATUSES)
        success_count = sum(1 for e in executions if e.execution_status == ExecutionStatus.SUCCESS)
        failure_count = executed_count - success_count
        passed_count = sum(1 for e in executions if e.review_status == ReviewStatus.PASSED)
        failed_count = sum(1 for e in executions if e.review_status == ReviewStatus.FAILED)
        pending_review_count = sum(1 for e in executions if e.review_status == ReviewStatus.PENDING)

        # 通过率 = 评审通过数 / 总用例数
        pass_rate = passed_count / total_cases * 100 if total_cases else None

        durations = [
            e.duration_ms
            for e in executions
            if e.execution_status == ExecutionStatus.SUCCESS and e.duration_ms
        ]
        avg_duration_ms = round(sum(durations) / len(durations)) if durations else None

        tokens = [t for t in (_total_tokens(e.token_usage) for e in executions) if t]
        avg_token_usage = round(sum(tokens) / len(tokens)) if tokens else None

        return BatchStats(
            total_cases=total_cases,
            executed_count=executed_count,
            success_count=success_count,
            failure_count=failure_count,
            passed_count=passed_count,
            failed_count=failed_count,
            pending_review_count=pending_review_count,
            pass_rate=pass_rate,
            avg_duration_ms=avg_duration_ms,
            avg_token_usage=avg_token_usage,
        )

    async def calculate_batch_stats(self, batch_id: str) -> BatchStats:
        executions = await self.storage.list_executions(batch_id)
        return self.compute_stats(executions)

    async def refresh_batch_stats(self, batch_id: str) -> BatchStats:
        """重新计算并写回批次统计

        已取消批次的执行计数在取消时冻结，之后只刷新评审相关字段。
        """

        stats = await self.calculate_batch_stats(batch_id)
        batch = await self.storage.get_batch(batch_id)
        if batch is not None and BatchStatus(batch.status) == BatchStatus.CANCELLED:
            stats = stats.model_copy(
                update={
                    "executed_count": batch.executed_count,
                    "success_count": batch.success_count,
                    "failure_count": batch.failure_count,
                }
            )
        await self.storage.update_batch_stats(batch_id, stats)
        logger.debug(
            "Batch stats refreshed",
            batch_id=batch_id,
            total_cases=stats.total_cases,
            executed_count=stats.executed_count,
        )
        return stats

    async def freeze_batch_stats(self, batch_id: str, counts: ExecutionCounts) -> BatchStats:
        """取消批次时写入统计，执行计数取自取消前的数据库计数"""

        stats = (await self.calculate_batch_stats(batch_id)).model_copy(
            update={
                "executed_count": counts.total,
                "success_count": counts.success,
                "failure_count": counts.failure + counts.timeout,
            }
        )
        await self.storage.update_batch_stats(batch_id, stats)
        logger.debug("Batch stats frozen", batch_id=batch_id, executed_count=stats.executed_count)
        return stats

    # ---------- 分类 / 失败原因 ----------

    def compute_category_stats(self, executions: Sequence[TestExecution]) -> List[CategoryStats]:
        by_category: Dict[str, Dict[str, int]] = {}
        for execution in executions:
            stats = by_category.setdefault(
                execution.category or UNCATEGORIZED,
                {"total": 0, "passed": 0, "failed": 0},
            )
            stats["total"] += 1
            if execution.review_status == ReviewStatus.PASSED:
                stats["passed"] += 1
            elif execution.review_status == ReviewStatus.FAILED:
                stats["failed"] += 1

        return [CategoryStats(category=category, **stats) for category, stats in by_category.items()]

    async def category_stats(self, batch_id: str) -> List[CategoryStats]:
        executions = await self.storage.list_executions(batch_id)
        return self.compute_category_stats(executions)

    def compute_failure_reason_stats(self, executions: Sequence[TestExecution]) -> List[FailureReasonStats]:
        counts: Dict[str, int] = {}
        for execution in executions:
            reason = execution.failure_reason
            key = reason.value if hasattr(reason, "value") else (reason or "other")
            counts[key] = counts.get(key, 0) + 1

        total = len(executions)
        result = [
            FailureReasonStats(
                reason=reason,
                count=count,
                percentage=round(count / total * 100) if total else 0,
            )
            for reason, count in counts.items()
        ]
        result.sort(key=lambda s: s.count, reverse=True)
        return result

    async def failure_reason_stats(self, batch_id: str) -> List[FailureReasonStats]:
        executions = await self.storage.list_executions(
            batch_id, ExecutionFilters(review_status=ReviewStatus.FAILED)
        )
        return self.compute_failure_reason_stats(executions)


def _total_tokens(token_usage: Optional[Dict[str, Any]]) -> Optional[int]:
    if not token_usage:
        return None
    value = token_usage.get("totalTokens", token_usage.get("total_tokens"))
    return int(value) if value else None
