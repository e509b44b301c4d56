# src/contest_explainer/backend/db/models/template.py

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class TemplateModel(Base, TimestampMixin):
    """
    [职责] Template：按名称存储的 prompt 模板（Jinja2 语法）。
    [边界] 仅保存模板文本；不负责渲染与变量校验。
    [上游关系] scripts/upsert_template.py 写入。
    [下游关系] generation pipeline 按 template_name 解析。
    """

    __tablename__ = "template"

    name: Mapped[str] = mapped_column(
        String(200),
        primary_key=True,
        comment="模板名称",
    )

    template: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="模板文本",
    )
