from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from agent_test_suite.config.settings import Settings, settings as default_settings

VALID_BACKOFF_TYPES = {"exponential", "fixed"}


@dataclass(frozen=True)
class ExecutionConfig:
    """批量执行引擎的运行参数

    构造时显式传入各组件（队列、Worker 池、执行器、进度跟踪器），
    不在运行过程中读取全局配置，测试可以按需覆盖。
    """

    queue_name: str = "agent-test"
    concurrency: int = 3
    job_timeout_ms: int = 120_000
    timeout_grace_ms: int = 5_000
    attempts: int = 2
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 5_000
    poll_interval: float = 1.0
    ready_timeout: float = 30.0
    stalled_check_interval: float = 30.0
    shutdown_timeout: float = 30.0
    progress_cache_ttl: int = 3600
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    scenario: str = "candidate-consultation"

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ValueError(f"Invalid ExecutionConfig: {'; '.join(errors)}")

    def validate(self) -> List[str]:
        """校验配置，返回错误信息列表"""
        errors: List[str] = []
        if not self.queue_name.strip():
            errors.append("queue_name is required")
        if self.concurrency <= 0:
            errors.append("concurrency must be positive")
        if self.job_timeout_ms <= 0:
            errors.append("job_timeout_ms must be positive")
        if self.timeout_grace_ms < 0:
            errors.append("timeout_grace_ms must be non-negative")
        if self.attempts < 1:
            errors.append("attempts must be >= 1")
        if self.backoff_type not in VALID_BACKOFF_TYPES:
            errors.append(f"backoff_type must be one of {sorted(VALID_BACKOFF_TYPES)}")
        if self.backoff_delay_ms < 0:
            errors.append("backoff_delay_ms must be non-negative")
        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")
        if self.progress_cache_ttl <= 0:
            errors.append("progress_cache_ttl must be positive")
        return errors

    @property
    def job_timeout_seconds(self) -> float:
        return self.job_timeout_ms / 1000

    @property
    def queue_timeout_ms(self) -> int:
        """队列层兜底超时：执行器自身超时之后再留一段宽限"""
        return self.job_timeout_ms + self.timeout_grace_ms

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "ExecutionConfig":
        s = source or default_settings
        return cls(
            queue_name=s.QUEUE_NAME,
            concurrency=s.WORKER_CONCURRENCY,
            job_timeout_ms=s.JOB_TIMEOUT_MS,
            timeout_grace_ms=s.JOB_TIMEOUT_GRACE_MS,
            attempts=s.JOB_ATTEMPTS,
            backoff_delay_ms=s.JOB_BACKOFF_DELAY_MS,
            poll_interval=s.QUEUE_POLL_INTERVAL,
            ready_timeout=s.QUEUE_READY_TIMEOUT,
            stalled_check_interval=s.STALLED_CHECK_INTERVAL,
            progress_cache_ttl=s.PROGRESS_CACHE_TTL,
            scenario=s.DEFAULT_SCENARIO,
        )
