"""共享 fixture：每个测试一个临时 SQLite 数据库"""

from typing import List

import pytest_asyncio

from agent_test_suite.core.state_machine import BatchLifecycleController
from agent_test_suite.main import SuiteRuntime
from agent_test_suite.services.stats_service import StatsService
from agent_test_suite.storage.database import Database
from agent_test_suite.storage.repository import TestSuiteStorage
from support import make_config


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test_suite.db'}", echo=False)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def storage(db):
    return TestSuiteStorage(db)


@pytest_asyncio.fixture
async def lifecycle(storage):
    return BatchLifecycleController(storage)


@pytest_asyncio.fixture
async def stats(storage):
    return StatsService(storage)


@pytest_asyncio.fixture
async def make_runtime(db):
    """启动一个完整运行时（队列、worker、进度跟踪），测试结束时停止"""
    runtimes: List[SuiteRuntime] = []

    async def factory(invoker, **overrides):
        runtime = SuiteRuntime(config=make_config(**overrides), db=db, invoker=invoker)
        await runtime.start()
        runtimes.append(runtime)
        return runtime

    yield factory

    for runtime in runtimes:
        await runtime.stop()
