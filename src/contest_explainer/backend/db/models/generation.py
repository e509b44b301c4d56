# src/contest_explainer/backend/db/models/generation.py

from __future__ import annotations

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from contest_explainer.backend.utils.constants import ROOT_GENERATION_ID, STATUS_IN_PROGRESS

from ..base import Base, TimestampMixin


class GenerationModel(Base, TimestampMixin):
    """
    [职责] 生成记录：一次“模板渲染 + 对话链 + 模型调用”的可回放持久化单元。
    [边界] 不保存模型/provider 快照；只保存回放任务所需字段与最终 input/output。
    [上游关系] orchestrator 创建 IN_PROGRESS 占位；pipeline 写入终态；超时回收强制 FAILED。
    [下游关系] 查重（指纹索引）、对话链回溯（previous_generation_id）、投票与 top-N 展示。
    """

    __tablename__ = "generation"
    __table_args__ = (
        Index("ix_generation_fingerprint", "problem_id", "generation_level", "solution_id"),
        Index("ix_generation_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="生成记录ID（自增）",
    )

    problem_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="题目ID",  # docstring: 指纹字段
    )

    solution_id: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="提交ID（0 表示题目级）",  # docstring: 指纹字段
    )

    generation_level: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="生成层级",  # docstring: 指纹字段
    )

    previous_generation_id: Mapped[int] = mapped_column(
        Integer,
        default=ROOT_GENERATION_ID,
        nullable=False,
        comment="对话链前驱ID（0 表示根）",
    )

    input: Mapped[str] = mapped_column(
        Text,
        default="",
        nullable=False,
        comment="渲染后的 prompt",
    )

    output: Mapped[str] = mapped_column(
        Text,
        default="",
        nullable=False,
        comment="模型回复",
    )

    template_name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="模板名",  # docstring: regenerate 回放使用
    )

    template_variables: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        comment="模板变量快照（JSON）",  # docstring: regenerate 回放使用
    )

    up_votes: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="点赞数",
    )

    down_votes: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="点踩数",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=STATUS_IN_PROGRESS,
        nullable=False,
        comment="IN_PROGRESS/READY/FAILED",
    )
