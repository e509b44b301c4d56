# src/contest_explainer/backend/db/repo/template_repo.py

"""
[职责] TemplateRepo：按名称读取与写入（upsert）prompt 模板。
[边界] 不渲染模板；只 flush 不 commit；并发插入同名模板时 flush 抛出 IntegrityError（由 TemplateStore 重试）。
[上游关系] TemplateStore 构造并注入会话。
[下游关系] generation pipeline 通过 TemplateStore.resolve 获取模板文本。
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.template import TemplateModel


class TemplateRepo:
    """Template repository (async SQLAlchemy)."""

    def __init__(self, session: AsyncSession):
        self._session = session  # docstring: DB 会话（由 store 注入）

    async def get_template(self, name: str) -> Optional[TemplateModel]:
        """Fetch template by name."""
        return await self._session.get(TemplateModel, name)

    async def upsert_template(self, *, name: str, template: str) -> TemplateModel:
        """Insert a template or replace its text."""  # docstring: 同名覆盖
        row = await self.get_template(name)
        if row is None:
            row = TemplateModel(name=name, template=template)
            self._session.add(row)
        else:
            row.template = template
        await self._session.flush()
        return row
