# src/contest_explainer/backend/services/generation_store.py

"""
[职责] GenerationStore：Result Store 门面；每次调用独占一个会话与事务，读操作前先执行超时回收。
[边界] 不做查重决策（由 orchestrator 负责）；不调用 LLM；对外只返回 schemas（不泄露 ORM 对象）。
[上游关系] GenerationOrchestrator / generation pipeline / 分发层（投票、top-N）调用。
[下游关系] GenerationRepo 执行具体 SQL；GenerationModel 持久化。
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contest_explainer.backend.db.engine import session_scope
from contest_explainer.backend.db.repo.generation_repo import GenerationRepo
from contest_explainer.backend.schemas.generation import ChatMessage, Fingerprint, Generation, GenerationTask
from contest_explainer.backend.utils.constants import STATUS_READY
from contest_explainer.backend.utils.logging_ import get_logger, log_event

__all__ = ["GenerationStore"]


class GenerationStore:
    """
    [职责] 持久化生成记录的异步门面（session-per-call）。
    [边界] 协程之间不共享 AsyncSession；单行更新的原子性由数据库保证。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stale_after_s: Optional[int] = None,
        top_limit: Optional[int] = None,
    ) -> None:
        if stale_after_s is None or top_limit is None:
            from contest_explainer.config import settings  # docstring: 延迟加载 settings

            stale_after_s = settings.GENERATION_STALE_AFTER_S if stale_after_s is None else stale_after_s
            top_limit = settings.GENERATION_TOP_LIMIT if top_limit is None else top_limit
        self._session_factory = session_factory  # docstring: 会话工厂（由 engine 创建）
        self.stale_after_s = int(stale_after_s)  # docstring: IN_PROGRESS 超时阈值（秒）
        self.top_limit = int(top_limit)  # docstring: top-N 默认条数
        self._logger = get_logger("generation_store")

    def _repo(self, session: AsyncSession) -> GenerationRepo:
        return GenerationRepo(session, stale_after_s=self.stale_after_s)

    async def _sweep(self, repo: GenerationRepo) -> int:
        swept = await repo.sweep_expired()
        if swept:
            log_event(
                self._logger,
                logging.WARNING,
                "expired in-progress generations",
                fields={"swept": swept, "stale_after_s": self.stale_after_s},
            )
        return swept

    async def sweep_expired(self) -> int:
        """Reclaim stale IN_PROGRESS records; returns how many were marked FAILED."""
        async with session_scope(self._session_factory) as s:
            return await self._sweep(self._repo(s))

    async def create_generation(self, task: GenerationTask) -> Generation:
        """Insert an IN_PROGRESS placeholder for task."""
        async with session_scope(self._session_factory) as s:
            row = await self._repo(s).create_generation(
                problem_id=task.problem_id,
                solution_id=task.solution_id,
                generation_level=task.generation_level,
                previous_generation_id=task.previous_generation_id,
                template_name=task.template_name,
                template_variables=task.template_variables.model_dump(exclude_none=True),
            )
            return Generation.model_validate(row)

    async def find_by_fingerprint(self, fingerprint: Fingerprint) -> List[Generation]:
        """Non-failed records for fingerprint, newest first."""
        async with session_scope(self._session_factory) as s:
            repo = self._repo(s)
            await self._sweep(repo)
            rows = await repo.find_by_fingerprint(
                problem_id=fingerprint.problem_id,
                generation_level=fingerprint.generation_level,
                solution_id=fingerprint.solution_id,
            )
            return [Generation.model_validate(r) for r in rows]

    async def get_generation(self, generation_id: int, *, include_failed: bool = False) -> Optional[Generation]:
        """Record by id; FAILED records are hidden unless include_failed."""
        async with session_scope(self._session_factory) as s:
            repo = self._repo(s)
            await self._sweep(repo)
            row = await repo.get_generation(generation_id, include_failed=include_failed)
            return Generation.model_validate(row) if row is not None else None

    async def set_terminal_status(
        self,
        generation_id: int,
        *,
        status: str,
        input: str = "",
        output: str = "",
    ) -> bool:
        """Write a terminal status once; False if the record is no longer IN_PROGRESS."""
        async with session_scope(self._session_factory) as s:
            return await self._repo(s).set_terminal_status(
                generation_id,
                status=status,
                input=input,
                output=output,
            )

    async def get_dialog_chain(self, generation_id: int, *, max_depth: int) -> List[ChatMessage]:
        """
        Prior turns ending at generation_id, root first.

        Each READY record contributes a (user=input, assistant=output) pair; other records add nothing.
        """
        async with session_scope(self._session_factory) as s:
            rows = await self._repo(s).get_dialog_chain(generation_id, max_depth=max_depth)
            messages: List[ChatMessage] = []
            for row in rows:
                if row.status != STATUS_READY:
                    continue
                messages.append(ChatMessage(text=row.input, is_user=True))
                messages.append(ChatMessage(text=row.output, is_user=False))
            return messages

    async def add_vote(self, generation_id: int, *, is_up_vote: bool) -> bool:
        async with session_scope(self._session_factory) as s:
            return await self._repo(s).add_vote(generation_id, is_up_vote=is_up_vote)

    async def select_top_generations(self, problem_id: int, *, limit: Optional[int] = None) -> List[Generation]:
        """Best-rated READY problem-level explanations."""
        limit = self.top_limit if limit is None else int(limit)
        async with session_scope(self._session_factory) as s:
            repo = self._repo(s)
            await self._sweep(repo)
            rows = await repo.select_top_generations(problem_id=problem_id, limit=limit)
            return [Generation.model_validate(r) for r in rows]

    async def get_generation_by_solution(self, solution_id: int) -> Optional[Generation]:
        async with session_scope(self._session_factory) as s:
            repo = self._repo(s)
            await self._sweep(repo)
            row = await repo.get_generation_by_solution(solution_id)
            return Generation.model_validate(row) if row is not None else None

    async def remove_generation(self, generation_id: int) -> bool:
        async with session_scope(self._session_factory) as s:
            return await self._repo(s).remove_generation(generation_id)
