import asyncio
from dataclasses import dataclass


@dataclass
class TerminalEvent:
    """任务终态消息：成功，或用尽重试后的最终失败"""

    batch_id: str
    case_id: str
    job_id: str
    status: str  # success, failure, timeout
    duration_ms: int = 0
    discarded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class EventChannel:
    """Processor -> ProgressTracker 的内部消息通道"""

    def __init__(self, maxsize: int = 0):
        self._queue: "asyncio.Queue[TerminalEvent]" = asyncio.Queue(maxsize=maxsize)

    async def publish(self, event: TerminalEvent) -> None:
        await self._queue.put(event)

    async def receive(self) -> TerminalEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """等待所有已发布的消息被处理完"""
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()
