# src/contest_explainer/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / async_sessionmaker，并提供 init_db/drop_db。
[边界] 不包含 ORM Model 定义；不包含业务事务编排（由 store 负责）；不负责迁移。
[上游关系] config.py / 环境变量提供数据库连接配置；脚本与 orchestrator 工厂调用。
[下游关系] services.generation_store / template_store 依赖 sessionmaker；tests 传入临时 sqlite 文件。
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .base import Base


def _settings_db_url() -> str | None:
    """
    Try reading DB URL from pydantic Settings (.env supported).
    """
    from contest_explainer.config import settings as _settings

    v = str(_settings.CONTEST_EXPLAINER_DATABASE_URL or "").strip()
    return v or None


def _default_db_url() -> str:
    """
    Fallback: local sqlite file under repo-root/.Local/.
    """
    from contest_explainer.config import REPO_ROOT

    db_path = REPO_ROOT / ".Local" / "contest_explainer.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_path.as_posix()}"


def resolve_db_url(override: str | None = None) -> str:
    """
    Resolve database URL.

    Priority:
        1) explicit override
        2) settings: CONTEST_EXPLAINER_DATABASE_URL (loads .env)
        3) env: DATABASE_URL
        4) fallback: local sqlite file
    """
    if override:
        return override
    s_url = _settings_db_url()
    if s_url:
        return s_url
    env_url = os.getenv("DATABASE_URL", "").strip()
    if env_url:
        return env_url
    return _default_db_url()


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create AsyncEngine.

    NOTE:
      - For SQLite we rely on aiosqlite driver.
    """  # docstring: 生产/测试都可复用；测试可传入临时 sqlite 文件路径
    db_url = resolve_db_url(url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")  # docstring: SQL 打印开关

    return create_async_engine(
        db_url,
        echo=db_echo,
        pool_pre_ping=True,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async sessionmaker."""  # docstring: expire_on_commit=False，提交后仍可读取行属性
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Transactional scope: one session + one transaction, committed on success.

    Usage:
      async with session_scope(factory) as s:
          ...
    """  # docstring: store 每次调用独占一个会话，协程之间不共享 AsyncSession
    async with session_factory() as session:
        async with session.begin():
            yield session


async def init_db(*, engine: AsyncEngine) -> None:
    """
    Initialize database schema (create_all).

    Must import models to register tables in Base.metadata.
    """
    from . import models  # noqa: F401  # docstring: 强制注册 ORM 表

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(*, engine: AsyncEngine) -> None:
    """
    Drop all tables (dangerous).

    Only for local/dev/tests.
    """
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
