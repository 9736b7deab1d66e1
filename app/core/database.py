"""元数据库连接

上传记录保存在关系数据库中（PostgreSQL/asyncpg，开发和测试使用SQLite/aiosqlite），
表结构由 Alembic 迁移管理
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Optional

from alembic import command
from alembic.config import Config
from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import settings


def _engine_options(url: str) -> dict[str, Any]:
    """SQLite没有连接池参数，其余数据库使用固定大小的连接池"""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


class DatabaseManager:
    """异步引擎和会话工厂"""

    def __init__(self, url: Optional[str] = None) -> None:
        url = url or settings.async_database_url
        self.engine = create_async_engine(url, echo=settings.debug, **_engine_options(url))
        self.async_session = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        # 日志中不输出密码
        logger.info(f"数据库引擎已创建: {make_url(url).render_as_string(hide_password=True)}")

    async def run_migrations(self) -> None:
        """升级到最新迁移版本

        Alembic 是同步API，放到线程池执行
        """
        await asyncio.get_running_loop().run_in_executor(None, self._upgrade_to_head)
        logger.info("数据库迁移完成")

    def _upgrade_to_head(self) -> None:
        command.upgrade(Config("alembic.ini"), "head")

    async def create_tables_fallback(self) -> None:
        """不经过迁移直接建表，仅用于调试模式"""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.warning("已直接根据模型建表（未记录迁移版本）")

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("数据库连接池已释放")

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """请求之外（脚本、健康检查）使用的会话"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_scope() as session:
            yield session


db_manager = DatabaseManager()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI依赖：每个请求一个数据库会话

    用法: db: AsyncSession = Depends(get_db)
    """
    async for session in db_manager.get_session():
        yield session
