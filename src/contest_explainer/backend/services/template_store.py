# src/contest_explainer/backend/services/template_store.py

"""
[职责] TemplateStore：模板按名称解析与写入的异步门面（session-per-call）。
[边界] 不渲染模板（见 pipelines.generation.prompt）；对外只返回 schemas.Template。
[上游关系] generation pipeline 调用 resolve；scripts/upsert_template.py 调用 upsert_template。
[下游关系] TemplateRepo / TemplateModel。
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contest_explainer.backend.db.engine import session_scope
from contest_explainer.backend.db.repo.template_repo import TemplateRepo
from contest_explainer.backend.schemas.generation import Template
from contest_explainer.backend.utils.errors import TemplateNotFoundError
from contest_explainer.backend.utils.logging_ import get_logger, log_event

__all__ = ["TemplateStore"]


class TemplateStore:
    """Template store facade."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory  # docstring: 会话工厂（由 engine 创建）
        self._logger = get_logger("template_store")

    async def get_template(self, name: str) -> Optional[Template]:
        async with session_scope(self._session_factory) as s:
            row = await TemplateRepo(s).get_template(name)
            return Template.model_validate(row) if row is not None else None

    async def resolve(self, name: str) -> Template:
        """Template by name; raises TemplateNotFoundError."""
        template = await self.get_template(name)
        if template is None:
            raise TemplateNotFoundError(template_name=name)
        return template

    async def upsert_template(self, name: str, template: str) -> Template:
        """
        Insert or replace a template.

        A concurrent insert of the same new name loses the primary-key race; the
        transaction is rolled back and retried once as an update.
        """
        try:
            return await self._upsert_once(name, template)
        except IntegrityError:
            log_event(
                self._logger,
                logging.INFO,
                "template upsert conflict, retrying as update",
                fields={"template_name": name},
            )
            return await self._upsert_once(name, template)

    async def _upsert_once(self, name: str, template: str) -> Template:
        async with session_scope(self._session_factory) as s:
            row = await TemplateRepo(s).upsert_template(name=name, template=template)
            return Template.model_validate(row)
