from typing import Dict, FrozenSet
from agent_test_suite.config.logger import logger
from agent_test_suite.core.exceptions import BatchNotFoundError, IllegalTransitionError, TransitionConflictError
from agent_test_suite.models.base import utcnow
from agent_test_suite.models.test_batch import BatchStatus, TestBatch
from agent_test_suite.storage.protocols import Storage


# 批次状态有效转换规则
#
# created   → running, cancelled
# running   → reviewing, cancelled
# reviewing → completed, cancelled
# completed → (终态)
# cancelled → (终态)
VALID_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.CREATED: frozenset({BatchStatus.RUNNING, BatchStatus.CANCELLED}),
    BatchStatus.RUNNING: frozenset({BatchStatus.REVIEWING, BatchStatus.CANCELLED}),
    BatchStatus.REVIEWING: frozenset({BatchStatus.COMPLETED, BatchStatus.CANCELLED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}

# 进入这些状态时记录完成时间
_FINISHING_STATES = {BatchStatus.COMPLETED, BatchStatus.CANCELLED}

_MAX_CAS_RETRIES = 3


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    """检查是否可以转移到新状态（同状态视为幂等，返回 True）"""
    return current == target or target in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: BatchStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


class BatchLifecycleController:
    """批次生命周期状态机，所有状态变更都经过这里落库"""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def transition(self, batch_id: str, target: BatchStatus) -> TestBatch:
        """将批次转移到目标状态

        - 已经处于目标状态：静默返回（幂等）
        - 转换不在规则表中：抛出 IllegalTransitionError
        - 否则写入新状态；completed / cancelled 同时记录完成时间
        - 多次被并发修改抢先：抛出 TransitionConflictError
        """
        for _ in range(_MAX_CAS_RETRIES):
            batch = await self.storage.get_batch(batch_id)
            if not batch:
                raise BatchNotFoundError(batch_id)

            current = BatchStatus(batch.status)
            if current == target:
                return batch

            allowed = VALID_TRANSITIONS.get(current, frozenset())
            if target not in allowed:
                logger.warning(
                    "Illegal batch transition",
                    batch_id=batch_id,
                    current=current.value,
                    target=target.value,
                )
                raise IllegalTransitionError(
                    batch_id, current.value, target.value, [s.value for s in allowed]
                )

            completed_at = utcnow() if target in _FINISHING_STATES else None
            # compare-and-set：并发转换时以先写入者为准，其余重新读取后再判断
            updated = await self.storage.update_batch_status(
                batch_id,
                target,
                expected_status=current,
                completed_at=completed_at,
            )
            if updated:
                logger.info(
                    "Batch status updated",
                    batch_id=batch_id,
                    current=current.value,
                    target=target.value,
                )
                batch.status = target
                if completed_at is not None:
                    batch.completed_at = completed_at
                return batch

        logger.warning(
            "Batch transition conflict",
            batch_id=batch_id,
            current=current.value,
            target=target.value,
        )
        raise TransitionConflictError(batch_id, current.value, target.value)
