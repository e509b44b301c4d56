# playground/sql_gate/test_engine_gate.py

"""
[职责] engine gate：验证 db/engine.py 的最小可用性（可创建 engine、init_db、drop_db、session_scope 提交/回滚）。
[边界] 不引入业务 pipeline；只验证 DB 基础设施可用且不污染默认路径。
[上游关系] 依赖 backend/db/engine.py 与 backend/db/base.py、backend/db/models 注册。
[下游关系] stores 依赖 session_scope 的事务语义。
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from contest_explainer.backend.db.engine import (
    create_engine,
    create_sessionmaker,
    drop_db,
    init_db,
    resolve_db_url,
    session_scope,
)
from contest_explainer.backend.db.models import TemplateModel


pytestmark = pytest.mark.sql_gate


@pytest.mark.asyncio
async def test_engine_init_and_drop(tmp_path) -> None:
    """Init DB creates tables; drop DB removes them (on isolated sqlite file)."""
    db_file = tmp_path / "engine_gate.db"
    url = f"sqlite+aiosqlite:///{db_file}"

    engine: AsyncEngine = create_engine(url=url, echo=False)
    try:
        await drop_db(engine=engine)  # docstring: 幂等（即使不存在也应安全）
        await init_db(engine=engine)

        async with engine.connect() as conn:
            rows = (await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))).fetchall()
            names = {r[0] for r in rows}

        assert "generation" in names
        assert "template" in names

        async with engine.connect() as conn:
            idx_rows = (await conn.execute(text("SELECT name FROM sqlite_master WHERE type='index'"))).fetchall()
            indexes = {r[0] for r in idx_rows}
        assert "ix_generation_fingerprint" in indexes  # docstring: 查重指纹索引

        await drop_db(engine=engine)

        async with engine.connect() as conn:
            rows2 = (await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))).fetchall()
            names2 = {r[0] for r in rows2}

        assert "generation" not in names2
        assert "template" not in names2
    finally:
        await engine.dispose()


def test_resolve_db_url_prefers_override() -> None:
    assert resolve_db_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


@pytest.mark.asyncio
async def test_session_scope_commits_and_rolls_back(engine: AsyncEngine) -> None:
    """session_scope commits on success and rolls back when the block raises."""
    factory = create_sessionmaker(engine)

    async with session_scope(factory) as s:
        s.add(TemplateModel(name="kept", template="x"))

    with pytest.raises(RuntimeError):
        async with session_scope(factory) as s:
            s.add(TemplateModel(name="dropped", template="y"))
            await s.flush()
            raise RuntimeError("boom")

    async with factory() as s:
        names = set((await s.scalars(select(TemplateModel.name))).all())
        count = await s.scalar(select(func.count()).select_from(TemplateModel))

    assert names == {"kept"}
    assert count == 1
