"""测试用的假 Invoker 和等待工具"""

import asyncio
import inspect
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent_test_suite.config.execution import ExecutionConfig
from agent_test_suite.core.exceptions import InvokerError
from agent_test_suite.core.interfaces import InvocationResult
from agent_test_suite.models.schemas import TestCaseInput


class FakeInvoker:
    """可控的 Agent 替身

    - delay: 每次调用耗时
    - fail_cases: 这些用例总是失败
    - fail_once_cases: 这些用例第一次失败，之后成功
    - hang_cases: 这些用例一直不返回（靠超时结束）
    - gates: 用例在对应 Event 被 set 之前阻塞
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail_cases: Iterable[str] = (),
        fail_once_cases: Iterable[str] = (),
        hang_cases: Iterable[str] = (),
        gates: Optional[Dict[str, asyncio.Event]] = None,
    ):
        self.delay = delay
        self.fail_cases = set(fail_cases)
        self.fail_once_cases = set(fail_once_cases)
        self.hang_cases = set(hang_cases)
        self.gates = gates or {}
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def call_count(self, case_id: str) -> int:
        return self.calls.count(case_id)

    async def invoke(self, message: str, history: List[Dict[str, Any]], metadata: Dict[str, Any]) -> InvocationResult:
        case_id = metadata["case_id"]
        self.calls.append(case_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if case_id in self.hang_cases:
                await asyncio.sleep(3600)
            if case_id in self.gates:
                await self.gates[case_id].wait()
            await asyncio.sleep(self.delay)

            if case_id in self.fail_cases:
                raise InvokerError(f"agent error for {case_id}", status_code=500)
            if case_id in self.fail_once_cases and self.call_count(case_id) == 1:
                raise InvokerError(f"transient error for {case_id}", status_code=502)

            return InvocationResult(
                output_text=f"reply: {message}",
                tool_calls=[{"toolName": "lookup", "input": {"q": message}, "output": None}],
                token_usage={"inputTokens": 6, "outputTokens": 4, "totalTokens": 10},
                request_body={"userMessage": message},
                response_body={"messages": []},
            )
        finally:
            self.in_flight -= 1


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_cases(count: int, prefix: str = "case") -> List[TestCaseInput]:
    return [
        TestCaseInput(
            case_id=f"{prefix}-{i}",
            case_name=f"Case {i}",
            category="faq" if i % 2 == 0 else "booking",
            message=f"question {i}",
            expected_output=f"answer {i}",
        )
        for i in range(count)
    ]


def make_config(**overrides: Any) -> ExecutionConfig:
    """测试用的小超时、短轮询配置"""
    values: Dict[str, Any] = dict(
        queue_name="agent-test",
        concurrency=3,
        job_timeout_ms=2_000,
        timeout_grace_ms=500,
        attempts=2,
        backoff_delay_ms=10,
        poll_interval=0.02,
        ready_timeout=2.0,
        stalled_check_interval=60.0,
        shutdown_timeout=2.0,
        progress_cache_ttl=60,
    )
    values.update(overrides)
    return ExecutionConfig(**values)


async def wait_for(condition: Callable[[], Any], timeout: float = 5.0, interval: float = 0.02) -> None:
    """轮询直到 condition 为真（支持 async 函数），超时断言失败"""
    deadline = time.monotonic() + timeout
    while True:
        result = condition()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return
        if time.monotonic() >= deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)
