# src/contest_explainer/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露仓储（Repo）对象，供 store/service 层调用。
[边界] 仅做导入与 __all__ 暴露；不包含业务编排。
[上游关系] 依赖各 repo 模块（generation/template）。
[下游关系] services 层通过本模块统一导入仓储能力；测试用例可直接引用以做 gate tests。
"""

from __future__ import annotations

from .generation_repo import GenerationRepo
from .template_repo import TemplateRepo

__all__ = [
    "GenerationRepo",
    "TemplateRepo",
]
