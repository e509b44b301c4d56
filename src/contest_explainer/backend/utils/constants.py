# src/contest_explainer/backend/utils/constants.py

"""
[职责] 集中定义生成记录状态、日志字段名与默认常量，降低跨模块硬编码。
[边界] 不包含运行时可变配置（见 config.Settings）；不读取环境变量。
[上游关系] schemas/db/pipelines/services 引用这些稳定字段与默认值。
[下游关系] 日志与持久化层使用一致字段名以便排障与回放。
"""

from __future__ import annotations


STATUS_IN_PROGRESS = "IN_PROGRESS"  # docstring: 生成中（唯一的非终态）
STATUS_READY = "READY"  # docstring: 生成成功（终态）
STATUS_FAILED = "FAILED"  # docstring: 生成失败/超时回收（终态）

ROOT_GENERATION_ID = 0  # docstring: previous_generation_id=0 表示对话链根节点

LOCK_SCOPE_GLOBAL = "global"  # docstring: 全局单锁
LOCK_SCOPE_FINGERPRINT = "fingerprint"  # docstring: 按指纹分锁

GENERATION_ID_KEY = "generation_id"  # docstring: generation_id 日志字段
PREVIOUS_GENERATION_ID_KEY = "previous_generation_id"  # docstring: previous_generation_id 日志字段
PROBLEM_ID_KEY = "problem_id"  # docstring: problem_id 日志字段
SOLUTION_ID_KEY = "solution_id"  # docstring: solution_id 日志字段
GENERATION_LEVEL_KEY = "generation_level"  # docstring: generation_level 日志字段
TEMPLATE_NAME_KEY = "template_name"  # docstring: template_name 日志字段
DURATION_MS_KEY = "duration_ms"  # docstring: 耗时字段（ms）
