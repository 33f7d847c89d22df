import asyncio
import time
from typing import Any, Dict, Optional
from agent_test_suite.config.logger import logger
from agent_test_suite.core.exceptions import InvokerTimeoutError
from agent_test_suite.core.interfaces import ExecutionOutcome, Invoker
from agent_test_suite.models.schemas import TestJobData
from agent_test_suite.models.test_execution import ExecutionStatus
from agent_test_suite.storage.protocols import Storage


class CaseExecutor:
    """用例执行器 - 调用一次 Agent 并把结果落库

    每次执行尝试只写一次数据库：
    - 成功，或已是最后一次尝试：写入终态（success / failure / timeout）
    - 失败但队列还会重试：写为 running 并带上错误信息，不计入完成数
    """

    def __init__(
        self,
        storage: Storage,
        invoker: Invoker,
        timeout_ms: int = 120_000,
        scenario: Optional[str] = None,
    ):
        self.storage = storage
        self.invoker = invoker
        self.timeout_ms = timeout_ms
        self.scenario = scenario

    async def execute(self, item: TestJobData, attempt: int = 1, max_attempts: int = 1) -> ExecutionOutcome:
        """执行单个用例，返回本次尝试的结果（失败不抛异常）"""

        logger.info(
            f"Executing case {item.case_name or item.message[:50]}",
            batch_id=item.batch_id,
            case_id=item.case_id,
            attempt=attempt,
        )
        outcome = await self._invoke(item)

        final = outcome.succeeded or attempt >= max_attempts
        outcome.persisted_terminal = final
        await self._persist(item, outcome, final)

        if outcome.succeeded:
            logger.info(
                "Case executed",
                batch_id=item.batch_id,
                case_id=item.case_id,
                duration_ms=outcome.duration_ms,
            )
        else:
            logger.warning(
                "Case execution failed",
                batch_id=item.batch_id,
                case_id=item.case_id,
                status=outcome.status.value,
                attempt=attempt,
                max_attempts=max_attempts,
                error=outcome.error,
            )
        return outcome

    async def _invoke(self, item: TestJobData) -> ExecutionOutcome:
        timeout = self.timeout_ms / 1000
        metadata: Dict[str, Any] = {
            "batch_id": item.batch_id,
            "case_id": item.case_id,
            "scenario": self.scenario,
        }
        start = time.monotonic()

        try:
            result = await asyncio.wait_for(
                self.invoker.invoke(item.message, list(item.history), metadata),
                timeout,
            )
        except asyncio.TimeoutError:
            return ExecutionOutcome(
                status=ExecutionStatus.TIMEOUT,
                duration_ms=_elapsed_ms(start),
                error=f"Timeout after {self.timeout_ms}ms",
            )
        except InvokerTimeoutError as e:
            return ExecutionOutcome(
                status=ExecutionStatus.TIMEOUT,
                duration_ms=_elapsed_ms(start),
                error=str(e),
            )
        except Exception as e:
            duration_ms = _elapsed_ms(start)
            # 错误信息里带 timeout 的也按超时归类
            timed_out = duration_ms >= self.timeout_ms or "timeout" in str(e).lower()
            return ExecutionOutcome(
                status=ExecutionStatus.TIMEOUT if timed_out else ExecutionStatus.FAILURE,
                duration_ms=duration_ms,
                error=str(e) or type(e).__name__,
            )

        return ExecutionOutcome(
            status=ExecutionStatus.SUCCESS,
            duration_ms=_elapsed_ms(start),
            actual_output=result.output_text,
            tool_calls=result.tool_calls,
            token_usage=result.token_usage,
            agent_request=result.request_body,
            agent_response=result.response_body,
        )

    async def _persist(self, item: TestJobData, outcome: ExecutionOutcome, final: bool) -> None:
        record: Dict[str, Any] = {
            "case_name": item.case_name,
            "category": item.category,
            "test_input": _test_input(item, self.scenario),
            "expected_output": item.expected_output,
            "agent_request": outcome.agent_request,
            "agent_response": outcome.agent_response,
            "actual_output": outcome.actual_output,
            "tool_calls": outcome.tool_calls,
            "execution_status": outcome.status if final else ExecutionStatus.RUNNING,
            "duration_ms": outcome.duration_ms,
            "token_usage": outcome.token_usage,
            "error_message": outcome.error[:2000] if outcome.error else None,
        }

        if item.batch_id:
            execution = await self.storage.upsert_execution_result(item.batch_id, item.case_id, record)
        else:
            record["case_id"] = item.case_id
            execution = await self.storage.create_execution(record)
        outcome.execution_id = execution.id


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _test_input(item: TestJobData, scenario: Optional[str]) -> Dict[str, Any]:
    test_input: Dict[str, Any] = {"message": item.message, "history": item.history}
    if scenario:
        test_input["scenario"] = scenario
    return test_input
