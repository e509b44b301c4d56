# playground/conftest.py

"""
[职责] gate tests 公共 fixtures：隔离的临时 sqlite 引擎、stores、可控的假聊天引擎与 orchestrator。
[边界] 不访问外部 LLM；不使用默认本地库（每个测试独立 tmp_path 文件）。
[上游关系] pytest / pytest-asyncio。
[下游关系] sql_gate / generation_gate / orchestrator_gate 用例。
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from contest_explainer.backend.db.base import utcnow
from contest_explainer.backend.db.engine import create_engine, create_sessionmaker, init_db, session_scope
from contest_explainer.backend.db.models import GenerationModel
from contest_explainer.backend.schemas.generation import ChatMessage
from contest_explainer.backend.services.generation_orchestrator import GenerationOrchestrator
from contest_explainer.backend.services.generation_store import GenerationStore
from contest_explainer.backend.services.template_store import TemplateStore


STALE_AFTER_S = 300  # docstring: 测试用超时阈值（秒）


class FakeChatEngine:
    """
    [职责] 可脚本化的聊天引擎：记录每次调用的消息序列，可挂起直到 release，可注入异常。
    [边界] 仅用于测试；不做上下文裁剪。
    """

    def __init__(self, reply: str = "engine reply") -> None:
        self.reply = reply
        self.error: Optional[Exception] = None  # docstring: 非空时 complete 抛出该异常
        self.calls: List[List[ChatMessage]] = []
        self.release = asyncio.Event()  # docstring: clear() 后调用会挂起
        self.release.set()

    def hold(self) -> None:
        self.release.clear()

    def resume(self) -> None:
        self.release.set()

    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        self.calls.append(list(messages))
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.reply


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """Isolated sqlite file with schema created."""  # docstring: 防污染默认本地库
    db_file = tmp_path / "gate.db"
    eng = create_engine(url=f"sqlite+aiosqlite:///{db_file}", echo=False)
    await init_db(engine=eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Single session for repo-level gates (rolled back on exit)."""
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()


@pytest.fixture
def generation_store(session_factory: async_sessionmaker[AsyncSession]) -> GenerationStore:
    return GenerationStore(session_factory, stale_after_s=STALE_AFTER_S)


@pytest.fixture
def template_store(session_factory: async_sessionmaker[AsyncSession]) -> TemplateStore:
    return TemplateStore(session_factory)


@pytest.fixture
def chat() -> FakeChatEngine:
    return FakeChatEngine()


@pytest_asyncio.fixture
async def orchestrator(
    generation_store: GenerationStore,
    template_store: TemplateStore,
    chat: FakeChatEngine,
) -> AsyncIterator[GenerationOrchestrator]:
    """Orchestrator with fast polling; drains background pipelines on teardown."""
    orch = GenerationOrchestrator(
        store=generation_store,
        templates=template_store,
        chat=chat,
        poll_interval_s=0.01,
    )
    try:
        yield orch
    finally:
        chat.resume()  # docstring: 释放仍挂起的 pipeline，避免 aclose 卡住
        await orch.aclose()


@pytest.fixture
def backdate(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[int, int], Awaitable[None]]:
    """Move a record's created_at into the past (simulates a stuck generation)."""

    async def _backdate(generation_id: int, seconds: int = STALE_AFTER_S + 60) -> None:
        async with session_scope(session_factory) as s:
            await s.execute(
                update(GenerationModel)
                .where(GenerationModel.id == generation_id)
                .values(created_at=utcnow() - timedelta(seconds=seconds))
            )

    return _backdate
