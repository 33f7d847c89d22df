from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from agent_test_suite.models.test_batch import BatchStatus
from agent_test_suite.models.test_execution import ReviewStatus, FailureReason


class TestCaseInput(BaseModel):
    """待执行的测试用例"""
    __test__ = False

    case_id: str
    case_name: Optional[str] = None
    category: Optional[str] = None
    message: str
    history: List[Dict[str, Any]] = Field(default_factory=list)
    expected_output: Optional[str] = None


class TestJobData(BaseModel):
    """队列任务数据（一个用例一次执行）"""
    __test__ = False

    batch_id: Optional[str] = None
    case_id: str
    case_name: Optional[str] = None
    category: Optional[str] = None
    message: str
    history: List[Dict[str, Any]] = Field(default_factory=list)
    expected_output: Optional[str] = None

    # 任务元信息，用于进度与 ETA 计算
    total_cases: int = 1
    case_index: int = 0  # 当前是第几个用例（0-based）

    @classmethod
    def from_case(
        cls,
        case: TestCaseInput,
        batch_id: Optional[str] = None,
        total_cases: int = 1,
        case_index: int = 0,
    ) -> "TestJobData":
        return cls(
            batch_id=batch_id,
            total_cases=total_cases,
            case_index=case_index,
            **case.model_dump(),
        )


class BatchProgress(BaseModel):
    """批次执行进度"""
    batch_id: str
    status: BatchStatus
    total_cases: int
    completed_cases: int
    success_count: int
    failure_count: int
    progress_percent: int  # 0-100
    estimated_remaining_ms: Optional[int] = None
    avg_duration_ms: Optional[int] = None


class CancelResult(BaseModel):
    """取消批次的结果"""
    batch_id: str
    waiting_removed: int = 0
    delayed_removed: int = 0
    active_discarded: int = 0

    @property
    def total_cancelled(self) -> int:
        return self.waiting_removed + self.delayed_removed + self.active_discarded


class QueueStatus(BaseModel):
    """队列各状态任务数"""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class BatchStats(BaseModel):
    """批次统计"""
    total_cases: int = 0
    executed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    passed_count: int = 0
    failed_count: int = 0
    pending_review_count: int = 0
    pass_rate: Optional[float] = None
    avg_duration_ms: Optional[int] = None
    avg_token_usage: Optional[int] = None


class CategoryStats(BaseModel):
    category: str
    total: int
    passed: int
    failed: int


class FailureReasonStats(BaseModel):
    reason: str
    count: int
    percentage: int


class ReviewUpdate(BaseModel):
    """人工评审结果"""
    review_status: ReviewStatus
    review_comment: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    reviewed_by: Optional[str] = None
