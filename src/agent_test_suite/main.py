import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from agent_test_suite.config.execution import ExecutionConfig
from agent_test_suite.config.logger import logger, setup_logging
from agent_test_suite.config.settings import settings
from agent_test_suite.core.cancellation import CancellationController
from agent_test_suite.core.events import EventChannel
from agent_test_suite.core.executor import CaseExecutor
from agent_test_suite.core.interfaces import Invoker
from agent_test_suite.core.job_queue import DurableJobQueue
from agent_test_suite.core.orchestrator import SuiteOrchestrator
from agent_test_suite.core.processor import BatchJobProcessor
from agent_test_suite.core.progress import InMemoryProgressCache, ProgressCache, ProgressTracker
from agent_test_suite.core.state_machine import BatchLifecycleController
from agent_test_suite.core.worker_pool import WorkerPool
from agent_test_suite.http_client.client import AgentHTTPInvoker
from agent_test_suite.services.review_service import ReviewService
from agent_test_suite.services.stats_service import StatsService
from agent_test_suite.storage.database import Database
from agent_test_suite.storage.repository import TestSuiteStorage


class SuiteRuntime:
    """组装并管理执行引擎各组件的生命周期"""

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        db: Optional[Database] = None,
        invoker: Optional[Invoker] = None,
        cache: Optional[ProgressCache] = None,
    ):
        self.config = config or ExecutionConfig.from_settings()
        self.db = db or Database()
        self.invoker = invoker or AgentHTTPInvoker()
        self.cache = cache or InMemoryProgressCache(ttl=self.config.progress_cache_ttl)

        self.storage = TestSuiteStorage(self.db)
        self.lifecycle = BatchLifecycleController(self.storage)
        self.stats = StatsService(self.storage)
        self.reviews = ReviewService(self.storage, self.stats, self.lifecycle)

        self.channel = EventChannel()
        self.queue = DurableJobQueue(self.db, queue_name=self.config.queue_name)
        self.pool = WorkerPool(
            self.queue,
            poll_interval=self.config.poll_interval,
            stalled_check_interval=self.config.stalled_check_interval,
            shutdown_timeout=self.config.shutdown_timeout,
        )
        self.executor = CaseExecutor(
            self.storage,
            self.invoker,
            timeout_ms=self.config.job_timeout_ms,
            scenario=self.config.scenario,
        )
        self.processor = BatchJobProcessor(
            self.queue,
            self.pool,
            self.executor,
            self.storage,
            self.channel,
            self.config,
        )
        self.tracker = ProgressTracker(self.storage, self.lifecycle, self.stats, self.cache, self.channel)
        self.cancellation = CancellationController(self.queue, self.cache)
        self.orchestrator = SuiteOrchestrator(
            storage=self.storage,
            lifecycle=self.lifecycle,
            stats=self.stats,
            queue=self.queue,
            enqueuer=self.processor,
            executor=self.executor,
            tracker=self.tracker,
            cancellation=self.cancellation,
            scenario=self.config.scenario,
        )
        self._started = False

    async def start(self) -> None:
        """初始化数据库，启动进度跟踪和 worker；队列不可用时抛出 QueueUnavailableError"""

        logger.info("=" * 60)
        logger.info(f"Starting {settings.APP_NAME}...")
        logger.info("=" * 60)

        try:
            if self.db.engine is None:
                await self.db.initialize()
            self.tracker.start()
            await self.processor.start()
        except Exception as e:
            logger.error(f"Failed to start test suite runtime: {e}", exc_info=True)
            await self.tracker.stop()
            raise

        self._started = True
        logger.info(
            "Test suite runtime started",
            queue=self.config.queue_name,
            concurrency=self.config.concurrency,
        )

    async def stop(self) -> None:
        if not self._started:
            return

        logger.info(f"Shutting down {settings.APP_NAME}...")
        try:
            await self.processor.stop()
            # 处理完 worker 已发布的终态事件
            try:
                await asyncio.wait_for(self.tracker.drain(), self.config.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Progress events not drained before shutdown", pending=self.channel.pending())
            await self.tracker.stop()
            await self.db.close()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)
        finally:
            self._started = False

        logger.info("Test suite runtime stopped")

    async def __aenter__(self) -> "SuiteRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


@asynccontextmanager
async def lifespan(config: Optional[ExecutionConfig] = None) -> AsyncIterator[SuiteRuntime]:
    """运行时生命周期管理"""
    runtime = SuiteRuntime(config=config)
    await runtime.start()
    try:
        yield runtime
    finally:
        await runtime.stop()


async def serve() -> None:
    """常驻运行 worker，收到 SIGINT / SIGTERM 后退出"""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("Signal handlers not supported on this platform", signal_name=sig.name)

    async with lifespan():
        await stop_event.wait()


def main() -> None:
    setup_logging()
    asyncio.run(serve())


if __name__ == "__main__":
    main()
