import httpx
import time
from typing import Any, Dict, List, Optional
from agent_test_suite.config.logger import logger
from agent_test_suite.config.settings import settings
from agent_test_suite.core.exceptions import InvokerError, InvokerTimeoutError
from agent_test_suite.core.interfaces import InvocationResult


class AgentHTTPInvoker:
    """异步 HTTP 客户端，用于调用 Agent 的对话接口"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        endpoint: str = "/chat",
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.AGENT_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.AGENT_API_TIMEOUT
        self.endpoint = endpoint
        self.headers = headers or {}
        self._transport = transport

    def build_payload(
        self,
        message: str,
        history: List[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "conversationId": f"test-{metadata.get('case_id') or int(time.time() * 1000)}",
            "userMessage": message,
            "messages": history,
        }
        if metadata.get("scenario"):
            payload["scenario"] = metadata["scenario"]
        return payload

    async def invoke(
        self,
        message: str,
        history: List[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> InvocationResult:
        """调用 Agent，成功返回提取后的结果，失败抛出 InvokerError"""

        payload = self.build_payload(message, history, metadata)
        url = f"{self.base_url}{self.endpoint}"
        start_time = time.time()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self.headers)
        except httpx.TimeoutException as e:
            logger.error(f"Request timeout: {e}", case_id=metadata.get("case_id"))
            raise InvokerTimeoutError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Request error: {e}", case_id=metadata.get("case_id"))
            raise InvokerError(str(e)) from e

        duration_ms = (time.time() - start_time) * 1000

        if response.status_code != 200:
            logger.warning(
                "Agent API call failed",
                endpoint=self.endpoint,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            raise InvokerError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Failed to parse JSON: {e}")
            raise InvokerError(f"JSON parse error: {e}", status_code=response.status_code) from e

        if isinstance(body, dict) and body.get("status") == "error":
            error = body.get("error") or {}
            raise InvokerError(error.get("message") or "Unknown agent error", status_code=response.status_code)

        logger.info(
            "Agent API call success",
            endpoint=self.endpoint,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )

        data = _response_data(body)
        return InvocationResult(
            output_text=extract_response_text(data),
            tool_calls=extract_tool_calls(data),
            token_usage=(data or {}).get("usage")
            or {"inputTokens": 0, "outputTokens": 0, "totalTokens": 0},
            request_body=payload,
            response_body=body if isinstance(body, dict) else {"data": body},
        )


def _response_data(body: Any) -> Optional[Dict[str, Any]]:
    """响应体可能是 {data: {...}}、{fallback: {...}} 或直接是数据"""
    if not isinstance(body, dict):
        return None
    for key in ("data", "fallback"):
        if isinstance(body.get(key), dict):
            return body[key]
    return body


def extract_response_text(data: Optional[Dict[str, Any]]) -> str:
    """提取回复文本：每条消息的 parts[].text 拼接，消息之间空行分隔"""
    messages = (data or {}).get("messages") or []
    texts = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        if msg.get("parts"):
            texts.append("".join(part.get("text") or "" for part in msg["parts"] if isinstance(part, dict)))
        else:
            texts.append(msg.get("content") or "")
    return "\n\n".join(texts)


def extract_tool_calls(data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """提取工具调用"""
    tool_calls: List[Dict[str, Any]] = []
    for msg in (data or {}).get("messages") or []:
        if not isinstance(msg, dict):
            continue
        for part in msg.get("parts") or []:
            if isinstance(part, dict) and (part.get("type") == "tool_call" or part.get("toolName")):
                tool_calls.append(
                    {
                        "toolName": part.get("toolName"),
                        "input": part.get("input"),
                        "output": part.get("output"),
                    }
                )
    return tool_calls
