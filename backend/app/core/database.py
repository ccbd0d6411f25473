"""
数据库连接：异步 engine、Session 工厂与 FastAPI 依赖
"""
from typing import AsyncGenerator, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def _engine_kwargs(url: str) -> dict:
    """按驱动设置超时，保证数据库调用不会无限阻塞"""
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg"):
        kwargs["connect_args"] = {"command_timeout": settings.DB_COMMAND_TIMEOUT}
        kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT
    return kwargs


def _database_url() -> str:
    # 未配置时使用本地 SQLite，便于开发调试
    return settings.DATABASE_URL.strip() or "sqlite+aiosqlite:///./checkout.db"


engine: AsyncEngine = create_async_engine(_database_url(), **_engine_kwargs(_database_url()))

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """请求级数据库会话"""
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """独立会话工厂（审计日志、续费任务按条目开启独立会话）"""
    return AsyncSessionLocal


def create_async_engine_and_session_for_celery() -> Tuple[AsyncEngine, async_sessionmaker]:
    """Celery 任务内使用：为当前事件循环新建 engine/session，用完需 dispose。"""
    url = _database_url()
    task_engine = create_async_engine(url, **_engine_kwargs(url))
    factory = async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)
    return task_engine, factory
