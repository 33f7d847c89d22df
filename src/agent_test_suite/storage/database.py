import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from agent_test_suite.config.settings import settings
from agent_test_suite.config.logger import logger
from agent_test_suite.models.base import Base


def _load_all_models() -> None:
    """Import all model modules so they are registered with SQLAlchemy metadata."""

    import importlib

    module_names = [
        "agent_test_suite.models.test_batch",
        "agent_test_suite.models.test_execution",
        "agent_test_suite.models.queue_job",
    ]

    for module_name in module_names:
        importlib.import_module(module_name)


class Database:
    """数据库操作接口"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.engine = None
        self.async_session = None
        self.database_url = database_url or settings.DATABASE_URL
        self.echo = settings.DEBUG if echo is None else echo
        self.db_path = Path(settings.DATABASE_PATH)
        # SQLite 只有一个写者，会话串行化避免 "database is locked"
        self._sqlite_lock: Optional[asyncio.Lock] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _resolve_url(self) -> str:
        database_url = self.database_url
        if self.is_sqlite and database_url.rstrip("/").endswith(":"):
            # sqlite+aiosqlite:// 未指定文件：放到 DATABASE_PATH 目录下
            self.db_path.mkdir(parents=True, exist_ok=True)
            db_file = (self.db_path / "test_suite.db").resolve()
            database_url = f"sqlite+aiosqlite:///{db_file}"
            logger.info(f"Using SQLite database: {db_file}")
        elif not self.is_sqlite:
            logger.info("Using SQL database via DATABASE_URL")
        return database_url

    async def initialize(self):
        """初始化数据库"""

        try:
            database_url = self._resolve_url()
            connect_args = {"timeout": 30} if self.is_sqlite else {}

            self.engine = create_async_engine(
                database_url,
                echo=self.echo,
                connect_args=connect_args,
            )

            # 确保所有模型已被加载到 Base.metadata（否则 create_all 不会创建新表）
            _load_all_models()

            # 创建表
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            # 会话工厂
            self.async_session = sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            if self.is_sqlite:
                self._sqlite_lock = asyncio.Lock()

            logger.info("Database initialized")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """获取会话（SQLite 下串行化，不可嵌套使用）"""
        if self.async_session is None:
            raise RuntimeError("Database is not initialized")

        if self._sqlite_lock is None:
            async with self.async_session() as session:
                yield session
            return

        async with self._sqlite_lock:
            async with self.async_session() as session:
                yield session

    async def ping(self) -> bool:
        """检查数据库连通性"""
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def create(self, model):
        """创建记录"""
        async with self.session() as session:
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model

    async def get(self, model_class, model_id: str):
        """按主键获取记录"""
        async with self.session() as session:
            return await session.get(model_class, model_id)

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()
