# src/contest_explainer/backend/db/base.py

"""
[职责] ORM 基座：DeclarativeBase 与通用时间戳 mixin。
[边界] 不定义业务表；不创建 engine/session。
[上游关系] 无。
[下游关系] db.models 下所有模型继承 Base/TimestampMixin；engine.init_db 使用 Base.metadata。
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）。"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class TimestampMixin:
    """created_at / updated_at（UTC，由应用侧写入以保证跨方言比较一致）。"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
        comment="创建时间（UTC）",  # docstring: 超时回收依据
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="更新时间（UTC）",
    )
