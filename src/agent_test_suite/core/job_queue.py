"""持久化任务队列

基于数据库表 queue_jobs 实现，语义与常见的 Redis 任务队列一致：

- 任务状态 waiting → active → completed / failed，失败可按退避策略重新投递（delayed）
- 同一任务同一时刻只会交给一个 worker（条件更新认领）
- 单任务超时、卡住任务（worker 中途退出）自动回到 waiting
- 支持删除未开始的任务、给执行中的任务打 discarded 标记
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, asdict, is_dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import delete, func, select, update

from agent_test_suite.config.logger import logger
from agent_test_suite.core.exceptions import JobTimeoutError, QueueUnavailableError
from agent_test_suite.models.queue_job import JobState, QueueJob
from agent_test_suite.storage.database import Database

QUEUE_EVENTS = ("active", "completed", "failed", "stalled")

# 没有设置超时的任务，认领锁默认持有时长
DEFAULT_LOCK_MS = 300_000


@dataclass
class JobOptions:
    """入队参数"""

    attempts: int = 1
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 0
    timeout_ms: Optional[int] = None
    priority: int = 0  # 越小越先执行
    delay_ms: int = 0
    remove_on_complete: bool = True
    remove_on_fail: bool = False


@dataclass
class JobHandle:
    """任务快照，对外暴露的句柄"""

    id: str
    queue_name: str
    name: str
    data: Dict[str, Any]
    state: JobState
    attempts: int
    attempts_made: int
    priority: int = 0
    timeout_ms: Optional[int] = None
    discarded: bool = False
    failed_reason: Optional[str] = None

    @classmethod
    def from_model(cls, job: QueueJob) -> "JobHandle":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            name=job.name,
            data=dict(job.data or {}),
            state=JobState(job.state),
            attempts=job.attempts,
            attempts_made=job.attempts_made,
            priority=job.priority,
            timeout_ms=job.timeout_ms,
            discarded=bool(job.discarded),
            failed_reason=job.failed_reason,
        )

    @property
    def batch_id(self) -> Optional[str]:
        return self.data.get("batch_id")

    @property
    def is_final_attempt(self) -> bool:
        """已用尽重试次数，或已被丢弃（丢弃的任务不再重试）"""
        return self.discarded or self.attempts_made >= self.attempts


JobRef = Union[JobHandle, str]
JobHandler = Callable[[JobHandle], Awaitable[Any]]


def _job_id(ref: JobRef) -> str:
    return ref.id if isinstance(ref, JobHandle) else ref


def backoff_delay_ms(backoff_type: str, delay_ms: int, attempts_made: int) -> int:
    """第 attempts_made 次失败后的重试等待时间"""
    if backoff_type == "exponential":
        return int(round((2 ** attempts_made - 1) * delay_ms))
    return int(delay_ms)


def _serialize_result(result: Any) -> Any:
    if result is None:
        return None
    if is_dataclass(result):
        return asdict(result)
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    if isinstance(result, (dict, list, str, int, float, bool)):
        return result
    return str(result)


class DurableJobQueue:
    """数据库持久化的任务队列"""

    def __init__(
        self,
        db: Database,
        queue_name: str = "agent-test",
        lock_grace_ms: int = 30_000,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.queue_name = queue_name
        self.lock_grace_ms = lock_grace_ms
        self._clock = clock
        self._listeners: Dict[str, List[Callable[..., Any]]] = {event: [] for event in QUEUE_EVENTS}
        self._claim_lock = asyncio.Lock()
        self._job_available = asyncio.Event()

    # ==================== 生命周期 ====================

    async def wait_until_ready(self, timeout: float = 30.0) -> None:
        """等待队列后端可用，超时则抛出 QueueUnavailableError"""
        deadline = time.monotonic() + timeout
        last_error: Optional[BaseException] = None

        while True:
            try:
                await self.db.ping()
                logger.info("Queue ready", queue=self.queue_name)
                return
            except Exception as e:
                last_error = e

            if time.monotonic() >= deadline:
                logger.error("Queue backend unavailable", queue=self.queue_name, error=str(last_error))
                raise QueueUnavailableError(
                    f"Queue '{self.queue_name}' not ready after {timeout}s: {last_error}"
                ) from last_error
            await asyncio.sleep(min(0.5, max(0.0, deadline - time.monotonic())))

    # ==================== 事件 ====================

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """注册事件监听：active(job) / completed(job, result) / failed(job, error, attempts_made) / stalled(job)"""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in queue '{event}' listener: {e}", exc_info=True)

    def _notify(self) -> None:
        self._job_available.set()

    async def wait_for_job(self, timeout: float) -> None:
        """空闲 worker 等待新任务入队（或超时后再轮询一次）"""
        try:
            await asyncio.wait_for(self._job_available.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._job_available.clear()

    def wake_all(self) -> None:
        self._notify()

    # ==================== 入队与查询 ====================

    async def enqueue(
        self,
        name: str,
        data: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        """添加任务，返回任务句柄"""
        options = options or JobOptions()
        now = self._clock()
        delayed = options.delay_ms > 0

        async with self.db.session() as session:
            max_sequence = (
                await session.execute(
                    select(func.max(QueueJob.sequence)).where(QueueJob.queue_name == self.queue_name)
                )
            ).scalar()

            job = QueueJob(
                queue_name=self.queue_name,
                name=name,
                data=data,
                state=JobState.DELAYED if delayed else JobState.WAITING,
                priority=options.priority,
                sequence=(max_sequence or 0) + 1,
                attempts=max(1, options.attempts),
                attempts_made=0,
                backoff_type=options.backoff_type,
                backoff_delay_ms=options.backoff_delay_ms,
                timeout_ms=options.timeout_ms,
                enqueued_at=now,
                available_at=now + options.delay_ms / 1000,
                discarded=False,
                remove_on_complete=options.remove_on_complete,
                remove_on_fail=options.remove_on_fail,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            handle = JobHandle.from_model(job)

        if not delayed:
            self._notify()
        logger.debug("Job enqueued", queue=self.queue_name, job_id=handle.id, state=handle.state.value)
        return handle

    async def get_job(self, ref: JobRef) -> Optional[JobHandle]:
        job = await self.db.get(QueueJob, _job_id(ref))
        return JobHandle.from_model(job) if job else None

    async def _list(self, state: JobState) -> List[JobHandle]:
        async with self.db.session() as session:
            stmt = (
                select(QueueJob)
                .where(QueueJob.queue_name == self.queue_name, QueueJob.state == state)
                .order_by(QueueJob.priority.asc(), QueueJob.sequence.asc())
            )
            jobs = (await session.execute(stmt)).scalars().all()
            return [JobHandle.from_model(job) for job in jobs]

    async def list_waiting(self) -> List[JobHandle]:
        return await self._list(JobState.WAITING)

    async def list_delayed(self) -> List[JobHandle]:
        return await self._list(JobState.DELAYED)

    async def list_active(self) -> List[JobHandle]:
        return await self._list(JobState.ACTIVE)

    async def get_job_counts(self) -> Dict[str, int]:
        """各状态任务数"""
        async with self.db.session() as session:
            stmt = (
                select(QueueJob.state, func.count())
                .where(QueueJob.queue_name == self.queue_name)
                .group_by(QueueJob.state)
            )
            rows = (await session.execute(stmt)).all()

        counts = {state.value: 0 for state in JobState}
        for state, count in rows:
            counts[JobState(state).value] = count
        return counts

    # ==================== 删除与丢弃 ====================

    async def remove(self, ref: JobRef) -> bool:
        """删除尚未开始执行的任务（waiting / delayed）"""
        async with self.db.session() as session:
            result = await session.execute(
                delete(QueueJob).where(
                    QueueJob.id == _job_id(ref),
                    QueueJob.state.in_([JobState.WAITING, JobState.DELAYED]),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def discard(self, ref: JobRef) -> bool:
        """标记执行中的任务为丢弃：无法中断，但完成后不再重试，监听方据此忽略结果"""
        async with self.db.session() as session:
            result = await session.execute(
                update(QueueJob)
                .where(QueueJob.id == _job_id(ref), QueueJob.state == JobState.ACTIVE)
                .values(discarded=True)
            )
            await session.commit()
            return result.rowcount > 0

    async def clean_failed(self) -> int:
        """清理保留下来的失败任务"""
        async with self.db.session() as session:
            result = await session.execute(
                delete(QueueJob).where(
                    QueueJob.queue_name == self.queue_name,
                    QueueJob.state == JobState.FAILED,
                )
            )
            await session.commit()
            return result.rowcount

    # ==================== 认领与执行 ====================

    async def promote_delayed(self) -> int:
        """到期的 delayed 任务转回 waiting"""
        async with self.db.session() as session:
            result = await session.execute(
                update(QueueJob)
                .where(
                    QueueJob.queue_name == self.queue_name,
                    QueueJob.state == JobState.DELAYED,
                    QueueJob.available_at <= self._clock(),
                )
                .values(state=JobState.WAITING)
            )
            await session.commit()
            return result.rowcount

    async def claim(self) -> Optional[JobHandle]:
        """认领下一个等待中的任务（waiting → active），没有任务返回 None"""
        async with self._claim_lock:
            await self.promote_delayed()

            for _ in range(3):
                async with self.db.session() as session:
                    job = (
                        await session.execute(
                            select(QueueJob)
                            .where(
                                QueueJob.queue_name == self.queue_name,
                                QueueJob.state == JobState.WAITING,
                            )
                            .order_by(QueueJob.priority.asc(), QueueJob.sequence.asc())
                            .limit(1)
                        )
                    ).scalars().first()
                    if job is None:
                        return None

                    lock_ms = (job.timeout_ms or DEFAULT_LOCK_MS) + self.lock_grace_ms
                    # 条件更新：其他进程抢先认领时 rowcount 为 0
                    result = await session.execute(
                        update(QueueJob)
                        .where(QueueJob.id == job.id, QueueJob.state == JobState.WAITING)
                        .values(
                            state=JobState.ACTIVE,
                            locked_until=self._clock() + lock_ms / 1000,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
                    if result.rowcount != 1:
                        continue

                    await session.refresh(job)
                    handle = JobHandle.from_model(job)

                await self._emit("active", handle)
                return handle

        return None

    async def run_job(self, job: JobHandle, handler: JobHandler) -> None:
        """执行已认领的任务并记录结果，任务异常不会向外抛出"""
        timeout = job.timeout_ms / 1000 if job.timeout_ms else None
        try:
            if timeout:
                result = await asyncio.wait_for(handler(job), timeout)
            else:
                result = await handler(job)
        except asyncio.CancelledError:
            # worker 被取消：任务保持 active，锁过期后作为卡住任务回收
            raise
        except asyncio.TimeoutError:
            await self._mark_failed(job, JobTimeoutError(job.id, job.timeout_ms))
        except Exception as e:
            await self._mark_failed(job, e)
        else:
            await self._mark_completed(job, result)

    async def _mark_completed(self, job: JobHandle, result: Any) -> None:
        async with self.db.session() as session:
            row = await session.get(QueueJob, job.id)
            if row is None:
                logger.warning("Completed job no longer exists", job_id=job.id)
                return

            row.attempts_made += 1
            row.locked_until = None
            row.finished_at = self._clock()
            handle = JobHandle.from_model(row)
            handle.state = JobState.COMPLETED

            if row.remove_on_complete:
                await session.delete(row)
            else:
                row.state = JobState.COMPLETED
                row.return_value = _serialize_result(result)
            await session.commit()

        await self._emit("completed", handle, result)

    async def _mark_failed(self, job: JobHandle, error: BaseException) -> None:
        async with self.db.session() as session:
            row = await session.get(QueueJob, job.id)
            if row is None:
                logger.warning("Failed job no longer exists", job_id=job.id)
                return

            row.attempts_made += 1
            row.locked_until = None
            row.failed_reason = str(error)[:2000]
            retry = not row.discarded and row.attempts_made < row.attempts

            if retry:
                delay = backoff_delay_ms(row.backoff_type, row.backoff_delay_ms or 0, row.attempts_made)
                row.state = JobState.DELAYED
                row.available_at = self._clock() + delay / 1000
                handle = JobHandle.from_model(row)
            else:
                row.finished_at = self._clock()
                handle = JobHandle.from_model(row)
                handle.state = JobState.FAILED
                if row.remove_on_fail:
                    await session.delete(row)
                else:
                    row.state = JobState.FAILED
            await session.commit()

        if retry:
            logger.debug(
                "Job scheduled for retry",
                job_id=job.id,
                attempts_made=handle.attempts_made,
                delay_ms=delay,
            )
        await self._emit("failed", handle, error, handle.attempts_made)

    async def recover_stalled(self) -> int:
        """把锁已过期的 active 任务放回 waiting（worker 中途退出）"""
        async with self.db.session() as session:
            jobs = (
                await session.execute(
                    select(QueueJob).where(
                        QueueJob.queue_name == self.queue_name,
                        QueueJob.state == JobState.ACTIVE,
                        QueueJob.locked_until < self._clock(),
                    )
                )
            ).scalars().all()

            for job in jobs:
                job.state = JobState.WAITING
                job.locked_until = None
            await session.commit()
            stalled = [JobHandle.from_model(job) for job in jobs]

        for handle in stalled:
            logger.warning("Job stalled, requeued", job_id=handle.id, batch_id=handle.batch_id)
            await self._emit("stalled", handle)
        if stalled:
            self._notify()
        return len(stalled)
