from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from agent_test_suite.core.interfaces import ExecutionOutcome


class TestSuiteError(Exception):
    """测试套件基础异常"""
    __test__ = False


class BatchNotFoundError(TestSuiteError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch not found: {batch_id}")
        self.batch_id = batch_id


class ExecutionNotFoundError(TestSuiteError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class IllegalTransitionError(TestSuiteError):
    """非法的批次状态转换（同状态转换是幂等的，不会抛出）"""

    def __init__(self, batch_id: str, current: str, target: str, allowed: Iterable[str] = ()):
        allowed = sorted(allowed)
        super().__init__(
            f"Illegal batch transition {batch_id}: {current} -> {target} "
            f"(allowed: {', '.join(allowed) or 'none'})"
        )
        self.batch_id = batch_id
        self.current = current
        self.target = target
        self.allowed = allowed


class TransitionConflictError(TestSuiteError):
    """并发修改导致状态转换多次写入失败"""

    def __init__(self, batch_id: str, last_status: str, target: str):
        super().__init__(
            f"Batch {batch_id} changed concurrently, last seen {last_status}, could not move to {target}"
        )
        self.batch_id = batch_id
        self.last_status = last_status
        self.target = target


class QueueUnavailableError(TestSuiteError):
    """队列后端在启动时不可用，子系统无法初始化"""


class JobTimeoutError(TestSuiteError):
    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class ItemExecutionError(TestSuiteError):
    """用例执行失败，交给队列决定是否重试；结果已由执行器落库"""

    def __init__(self, outcome: "ExecutionOutcome"):
        super().__init__(outcome.error or f"Execution {outcome.status.value}")
        self.outcome = outcome


class InvokerError(TestSuiteError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvokerTimeoutError(InvokerError):
    pass
