from sqlalchemy import Column, String, Integer, Float, Boolean, JSON, Enum as SQLEnum
from agent_test_suite.models.base import Base, RecordMixin
from enum import Enum


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(RecordMixin, Base):
    """持久化队列中的一个任务"""

    __tablename__ = "queue_jobs"

    queue_name = Column(String(100), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    data = Column(JSON, nullable=False)

    state = Column(SQLEnum(JobState), default=JobState.WAITING, nullable=False, index=True)
    priority = Column(Integer, default=0, nullable=False)  # 越小越先执行
    sequence = Column(Integer, default=0, nullable=False)  # 同优先级内的入队顺序

    # 重试
    attempts = Column(Integer, default=1, nullable=False)
    attempts_made = Column(Integer, default=0, nullable=False)
    backoff_type = Column(String(20), default="exponential")
    backoff_delay_ms = Column(Integer, default=0)
    timeout_ms = Column(Integer)

    # 时间（epoch 秒）
    enqueued_at = Column(Float, nullable=False)
    available_at = Column(Float, nullable=False)  # delayed 任务的到期时间
    locked_until = Column(Float)  # active 任务的锁到期时间，过期视为卡住
    finished_at = Column(Float)

    discarded = Column(Boolean, default=False, nullable=False)
    failed_reason = Column(String(2000))
    return_value = Column(JSON)

    remove_on_complete = Column(Boolean, default=True, nullable=False)
    remove_on_fail = Column(Boolean, default=False, nullable=False)
