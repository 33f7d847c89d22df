"""执行引擎依赖的持久化接口"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from agent_test_suite.models.schemas import BatchStats, ReviewUpdate, TestCaseInput
from agent_test_suite.models.test_batch import BatchSource, BatchStatus, TestBatch
from agent_test_suite.models.test_execution import ExecutionStatus, ReviewStatus, TestExecution


@dataclass
class ExecutionCounts:
    """批次中已到终态的执行记录数"""

    total: int = 0
    success: int = 0
    failure: int = 0
    timeout: int = 0


@dataclass
class ExecutionFilters:
    review_status: Optional[ReviewStatus] = None
    execution_status: Optional[ExecutionStatus] = None
    category: Optional[str] = None


class Storage(Protocol):
    async def create_batch(
        self, name: str, source: BatchSource = BatchSource.MANUAL, created_by: Optional[str] = None
    ) -> TestBatch: ...

    async def get_batch(self, batch_id: str) -> Optional[TestBatch]: ...

    async def list_batches(self, limit: int = 20, offset: int = 0) -> List[TestBatch]: ...

    async def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        expected_status: Optional[BatchStatus] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool: ...

    async def update_batch_stats(self, batch_id: str, stats: BatchStats) -> None: ...

    async def create_execution(self, data: Dict[str, Any]) -> TestExecution: ...

    async def ensure_pending_executions(
        self, batch_id: str, cases: Sequence[TestCaseInput], scenario: Optional[str] = None
    ) -> int: ...

    async def upsert_execution_result(self, batch_id: str, case_id: str, result: Dict[str, Any]) -> TestExecution: ...

    async def count_non_pending_executions(self, batch_id: str) -> ExecutionCounts: ...

    async def get_execution(self, execution_id: str) -> Optional[TestExecution]: ...

    async def list_executions(
        self, batch_id: str, filters: Optional[ExecutionFilters] = None
    ) -> List[TestExecution]: ...

    async def update_review(self, execution_ids: Sequence[str], review: ReviewUpdate) -> List[TestExecution]: ...
