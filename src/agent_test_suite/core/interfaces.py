"""执行引擎各组件之间的窄接口

队列驱动方（Processor）只依赖 Executor，提交方（Orchestrator）只依赖 Enqueuer，
两者互不引用具体类。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from agent_test_suite.models.schemas import TestCaseInput, TestJobData
from agent_test_suite.models.test_execution import ExecutionStatus


@dataclass
class InvocationResult:
    """Invoker 成功返回的内容"""

    output_text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: Optional[Dict[str, Any]] = None
    request_body: Optional[Dict[str, Any]] = None
    response_body: Optional[Dict[str, Any]] = None


@dataclass
class ExecutionOutcome:
    """一次执行尝试的结果"""

    status: ExecutionStatus
    duration_ms: int
    actual_output: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: Optional[Dict[str, Any]] = None
    agent_request: Optional[Dict[str, Any]] = None
    agent_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    execution_id: Optional[str] = None
    # 落库时是否已写为终态（重试前的失败尝试写为 running）
    persisted_terminal: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


class Invoker(Protocol):
    """被测的外部黑盒（Agent）"""

    async def invoke(
        self,
        message: str,
        history: List[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> InvocationResult:
        """成功返回结果，失败直接抛异常"""


class Executor(Protocol):
    async def execute(self, item: TestJobData, attempt: int = 1, max_attempts: int = 1) -> ExecutionOutcome:
        ...


class Enqueuer(Protocol):
    async def add_batch_jobs(self, batch_id: str, cases: Sequence[TestCaseInput]) -> List[str]:
        ...
