from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from agent_test_suite.config.logger import logger
from agent_test_suite.models.base import utcnow
from agent_test_suite.models.schemas import BatchStats, ReviewUpdate, TestCaseInput
from agent_test_suite.models.test_batch import BatchSource, BatchStatus, TestBatch
from agent_test_suite.models.test_execution import (
    ExecutionStatus,
    TERMINAL_EXECUTION_STATUSES,
    TestExecution,
)
from agent_test_suite.storage.database import Database
from agent_test_suite.storage.protocols import ExecutionCounts, ExecutionFilters

_EXECUTION_COLUMNS = frozenset(TestExecution.__table__.columns.keys())


class TestSuiteStorage:
    """批次与执行记录的持久化（Storage 接口的 SQLAlchemy 实现）"""

    __test__ = False

    def __init__(self, db: Database):
        self.db = db

    # ==================== 批次 ====================

    async def create_batch(
        self,
        name: str,
        source: BatchSource = BatchSource.MANUAL,
        created_by: Optional[str] = None,
    ) -> TestBatch:
        """创建测试批次"""
        batch = await self.db.create(
            TestBatch(
                name=name,
                source=source,
                status=BatchStatus.CREATED,
                created_by=created_by,
            )
        )
        logger.info("Batch created", batch_id=batch.id, batch_name=batch.name)
        return batch

    async def get_batch(self, batch_id: str) -> Optional[TestBatch]:
        return await self.db.get(TestBatch, batch_id)

    async def list_batches(self, limit: int = 20, offset: int = 0) -> List[TestBatch]:
        async with self.db.session() as session:
            stmt = (
                select(TestBatch)
                .order_by(TestBatch.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        expected_status: Optional[BatchStatus] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """写入批次状态

        expected_status 不为空时做 compare-and-set，当前状态不符则不更新并返回 False。
        """
        values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if completed_at is not None:
            values["completed_at"] = completed_at

        stmt = update(TestBatch).where(TestBatch.id == batch_id)
        if expected_status is not None:
            stmt = stmt.where(TestBatch.status == expected_status)

        async with self.db.session() as session:
            result = await session.execute(stmt.values(**values))
            await session.commit()
            return result.rowcount > 0

    async def update_batch_stats(self, batch_id: str, stats: BatchStats) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(TestBatch)
                .where(TestBatch.id == batch_id)
                .values(updated_at=utcnow(), **stats.model_dump())
            )
            await session.commit()

    # ==================== 执行记录 ====================

    async def create_execution(self, data: Dict[str, Any]) -> TestExecution:
        """新增执行记录（不关联批次的单条执行也走这里）"""
        _check_columns(data)
        return await self.db.create(TestExecution(**data))

    async def ensure_pending_executions(
        self,
        batch_id: str,
        cases: Sequence[TestCaseInput],
        scenario: Optional[str] = None,
    ) -> int:
        """为批次中尚无记录的用例写入 pending 执行记录，返回新增条数"""
        async with self.db.session() as session:
            result = await session.execute(
                select(TestExecution.case_id).where(TestExecution.batch_id == batch_id)
            )
            existing = set(result.scalars().all())

            created = 0
            for case in cases:
                if case.case_id in existing:
                    continue
                existing.add(case.case_id)
                session.add(
                    TestExecution(
                        batch_id=batch_id,
                        case_id=case.case_id,
                        case_name=case.case_name,
                        category=case.category,
                        test_input=_test_input(case.message, case.history, scenario),
                        expected_output=case.expected_output,
                        actual_output="",
                        tool_calls=[],
                        execution_status=ExecutionStatus.PENDING,
                        duration_ms=0,
                    )
                )
                created += 1

            await session.commit()
            return created

    async def upsert_execution_result(
        self,
        batch_id: str,
        case_id: str,
        result: Dict[str, Any],
    ) -> TestExecution:
        """按 (batch_id, case_id) 写入执行结果：已存在则覆盖，不存在则新增

        重试的任务会覆盖上一次的结果而不是产生重复记录。
        """
        _check_columns(result)

        for attempt in range(2):
            async with self.db.session() as session:
                stmt = select(TestExecution).where(
                    TestExecution.batch_id == batch_id,
                    TestExecution.case_id == case_id,
                )
                execution = (await session.execute(stmt)).scalars().first()

                if execution is None:
                    execution = TestExecution(batch_id=batch_id, case_id=case_id, **result)
                    session.add(execution)
                else:
                    for key, value in result.items():
                        setattr(execution, key, value)
                    execution.updated_at = utcnow()

                try:
                    await session.commit()
                except IntegrityError:
                    # 并发插入同一个键：回滚后按更新重来
                    await session.rollback()
                    if attempt:
                        raise
                    logger.warning("Upsert conflict, retrying", batch_id=batch_id, case_id=case_id)
                    continue

                await session.refresh(execution)
                return execution

        raise RuntimeError("unreachable")

    async def count_non_pending_executions(self, batch_id: str) -> ExecutionCounts:
        """统计批次中已到终态（success/failure/timeout）的执行记录"""
        async with self.db.session() as session:
            stmt = (
                select(TestExecution.execution_status, func.count())
                .where(
                    TestExecution.batch_id == batch_id,
                    TestExecution.execution_status.in_(TERMINAL_EXECUTION_STATUSES),
                )
                .group_by(TestExecution.execution_status)
            )
            rows = (await session.execute(stmt)).all()

        by_status = {status: count for status, count in rows}
        counts = ExecutionCounts(
            success=by_status.get(ExecutionStatus.SUCCESS, 0),
            failure=by_status.get(ExecutionStatus.FAILURE, 0),
            timeout=by_status.get(ExecutionStatus.TIMEOUT, 0),
        )
        counts.total = counts.success + counts.failure + counts.timeout
        return counts

    async def get_execution(self, execution_id: str) -> Optional[TestExecution]:
        return await self.db.get(TestExecution, execution_id)

    async def list_executions(
        self,
        batch_id: str,
        filters: Optional[ExecutionFilters] = None,
    ) -> List[TestExecution]:
        """获取批次的执行记录"""
        stmt = select(TestExecution).where(TestExecution.batch_id == batch_id)
        if filters:
            if filters.review_status:
                stmt = stmt.where(TestExecution.review_status == filters.review_status)
            if filters.execution_status:
                stmt = stmt.where(TestExecution.execution_status == filters.execution_status)
            if filters.category:
                stmt = stmt.where(TestExecution.category == filters.category)

        async with self.db.session() as session:
            result = await session.execute(stmt.order_by(TestExecution.created_at.asc()))
            return list(result.scalars().all())

    async def update_review(
        self,
        execution_ids: Sequence[str],
        review: ReviewUpdate,
    ) -> List[TestExecution]:
        """更新评审状态，返回被更新的记录"""
        if not execution_ids:
            return []

        async with self.db.session() as session:
            stmt = select(TestExecution).where(TestExecution.id.in_(list(execution_ids)))
            executions = list((await session.execute(stmt)).scalars().all())

            reviewed_at = utcnow()
            for execution in executions:
                execution.review_status = review.review_status
                execution.review_comment = review.review_comment
                execution.failure_reason = review.failure_reason
                execution.reviewed_by = review.reviewed_by
                execution.reviewed_at = reviewed_at

            await session.commit()
            return executions


def _test_input(message: str, history: Optional[List[Dict[str, Any]]], scenario: Optional[str]) -> Dict[str, Any]:
    test_input: Dict[str, Any] = {"message": message, "history": history or []}
    if scenario:
        test_input["scenario"] = scenario
    return test_input


def _check_columns(data: Dict[str, Any]) -> None:
    unknown = set(data) - _EXECUTION_COLUMNS
    if unknown:
        raise ValueError(f"Unknown execution fields: {sorted(unknown)}")
