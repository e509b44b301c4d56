# src/contest_explainer/backend/db/repo/generation_repo.py

"""
[职责] GenerationRepo：生成记录的写入、条件终态回写、超时回收与查询（指纹查重/对话链/投票/top-N）。
[边界] 不调用 LLM；不渲染模板；只 flush 不 commit（事务由 store 的 session_scope 管理）。
[上游关系] GenerationStore 每次调用构造一个 repo（绑定独立会话）。
[下游关系] orchestrator 查重与占位写入；pipeline 回写终态；分发层投票与展示。
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contest_explainer.backend.utils.constants import (
    ROOT_GENERATION_ID,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_READY,
)
from contest_explainer.backend.utils.errors import DialogChainError

from ..base import utcnow
from ..models.generation import GenerationModel


class GenerationRepo:
    """Generation repository (async SQLAlchemy)."""

    def __init__(self, session: AsyncSession, *, stale_after_s: int = 300):
        self._session = session  # docstring: DB 会话（由 store 注入）
        self._stale_after = timedelta(seconds=int(stale_after_s))  # docstring: IN_PROGRESS 最长存活时间

    async def sweep_expired(self) -> int:
        """Mark stale IN_PROGRESS rows as FAILED; return affected row count."""  # docstring: 读前惰性回收
        cutoff = utcnow() - self._stale_after
        stmt = (
            update(GenerationModel)
            .where(GenerationModel.status == STATUS_IN_PROGRESS)
            .where(GenerationModel.created_at < cutoff)
            .values(status=STATUS_FAILED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await self._session.execute(stmt)
        return int(res.rowcount or 0)

    async def create_generation(
        self,
        *,
        problem_id: int,
        solution_id: int,
        generation_level: int,
        previous_generation_id: int,
        template_name: str,
        template_variables: dict | None = None,
    ) -> GenerationModel:
        """Insert an IN_PROGRESS placeholder."""  # docstring: 查重锁内写入，后续查询即可观察到
        row = GenerationModel(
            problem_id=problem_id,  # docstring: 指纹
            solution_id=solution_id,  # docstring: 指纹
            generation_level=generation_level,  # docstring: 指纹
            previous_generation_id=previous_generation_id or ROOT_GENERATION_ID,  # docstring: 对话前驱
            input="",  # docstring: 终态时回写
            output="",  # docstring: 终态时回写
            template_name=template_name,
            template_variables=dict(template_variables or {}),
            status=STATUS_IN_PROGRESS,
        )
        self._session.add(row)
        await self._session.flush()  # docstring: 获取自增 id
        return row

    async def find_by_fingerprint(
        self,
        *,
        problem_id: int,
        generation_level: int,
        solution_id: int,
    ) -> List[GenerationModel]:
        """List non-failed rows for a fingerprint, newest first."""
        stmt = (
            select(GenerationModel)
            .where(GenerationModel.problem_id == problem_id)
            .where(GenerationModel.generation_level == generation_level)
            .where(GenerationModel.solution_id == solution_id)
            .where(GenerationModel.status != STATUS_FAILED)
            .order_by(GenerationModel.created_at.desc(), GenerationModel.id.desc())
        )
        res = await self._session.scalars(stmt)
        return list(res.all())

    async def get_generation(
        self,
        generation_id: int,
        *,
        include_failed: bool = False,
    ) -> Optional[GenerationModel]:
        """Fetch a row by id (FAILED rows hidden unless include_failed)."""
        row = await self._session.get(GenerationModel, generation_id, populate_existing=True)
        if row is None:
            return None
        if row.status == STATUS_FAILED and not include_failed:
            return None
        return row

    async def set_terminal_status(
        self,
        generation_id: int,
        *,
        status: str,
        input: str = "",
        output: str = "",
    ) -> bool:
        """
        Move a row from IN_PROGRESS to a terminal status.

        Returns False when the row is gone or already terminal (e.g. reclaimed by expiry).
        """  # docstring: 条件更新保证终态只写一次
        if status not in (STATUS_READY, STATUS_FAILED):
            raise ValueError(f"not a terminal status: {status}")
        stmt = (
            update(GenerationModel)
            .where(GenerationModel.id == generation_id)
            .where(GenerationModel.status == STATUS_IN_PROGRESS)
            .values(status=status, input=input, output=output, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await self._session.execute(stmt)
        return int(res.rowcount or 0) == 1

    async def get_dialog_chain(self, generation_id: int, *, max_depth: int) -> List[GenerationModel]:
        """
        Walk previous_generation_id links from generation_id back to the root.

        Returns rows in chronological order (root first, generation_id last).
        A missing predecessor ends the walk; a cycle or a chain longer than max_depth raises.
        """
        chain: List[GenerationModel] = []
        seen: set[int] = set()
        cur_id = generation_id
        while cur_id != ROOT_GENERATION_ID:
            if cur_id in seen:
                raise DialogChainError(
                    generation_id=generation_id,
                    message=f"dialog chain cycle at generation {cur_id}",
                    depth=len(chain),
                )
            if len(chain) >= max_depth:
                raise DialogChainError(
                    generation_id=generation_id,
                    message=f"dialog chain exceeds max depth {max_depth}",
                    depth=len(chain),
                )
            seen.add(cur_id)
            row = await self._session.get(GenerationModel, cur_id)
            if row is None:
                break
            chain.append(row)
            cur_id = row.previous_generation_id or ROOT_GENERATION_ID
        chain.reverse()
        return chain

    async def add_vote(self, generation_id: int, *, is_up_vote: bool) -> bool:
        """Increment up_votes or down_votes atomically."""  # docstring: 计数只增不减
        if is_up_vote:
            values = {"up_votes": GenerationModel.up_votes + 1}
        else:
            values = {"down_votes": GenerationModel.down_votes + 1}
        stmt = (
            update(GenerationModel)
            .where(GenerationModel.id == generation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self._session.execute(stmt)
        return int(res.rowcount or 0) == 1

    async def select_top_generations(self, *, problem_id: int, limit: int = 5) -> List[GenerationModel]:
        """
        Best-rated READY problem-level explanations (solution_id=0, generation_level=1).

        Ordered by (up_votes - down_votes) desc, then up_votes desc; rows repeating an input are skipped.
        """
        stmt = (
            select(GenerationModel)
            .where(GenerationModel.problem_id == problem_id)
            .where(GenerationModel.solution_id == 0)
            .where(GenerationModel.generation_level == 1)
            .where(GenerationModel.status == STATUS_READY)
            .order_by(
                (GenerationModel.up_votes - GenerationModel.down_votes).desc(),
                GenerationModel.up_votes.desc(),
                GenerationModel.id.desc(),
            )
        )
        res = await self._session.scalars(stmt)
        top: List[GenerationModel] = []
        seen_inputs: set[str] = set()
        for row in res.all():
            if row.input in seen_inputs:
                continue
            seen_inputs.add(row.input)
            top.append(row)
            if len(top) >= limit:
                break
        return top

    async def get_generation_by_solution(self, solution_id: int) -> Optional[GenerationModel]:
        """Newest non-failed row for a solution."""
        stmt = (
            select(GenerationModel)
            .where(GenerationModel.solution_id == solution_id)
            .where(GenerationModel.status != STATUS_FAILED)
            .order_by(GenerationModel.created_at.desc(), GenerationModel.id.desc())
            .limit(1)
        )
        return await self._session.scalar(stmt)

    async def remove_generation(self, generation_id: int) -> bool:
        """Physically delete a row."""
        stmt = delete(GenerationModel).where(GenerationModel.id == generation_id)
        res = await self._session.execute(stmt)
        return int(res.rowcount or 0) == 1
