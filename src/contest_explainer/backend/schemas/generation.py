# src/contest_explainer/backend/schemas/generation.py

"""
[职责] Generation 契约层：生成任务（GenerationTask）、持久化生成记录（Generation）、对话消息与模板结构。
[边界] 不实现 LLM 调用；不实现模板渲染；不访问 DB；仅表达可回放的输入与输出快照。
[上游关系] bot 分发层构造 GenerationTask；db.models.GenerationModel 通过 from_attributes 转为 Generation。
[下游关系] orchestrator/pipeline/store 之间统一传递本模块的结构。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from contest_explainer.backend.utils.constants import ROOT_GENERATION_ID, STATUS_FAILED, STATUS_READY


GenerationStatus = Literal["IN_PROGRESS", "READY", "FAILED"]  # docstring: 生成状态（两种终态）


class Fingerprint(NamedTuple):
    """查重指纹：同一 (problem_id, generation_level, solution_id) 视为同一逻辑请求。"""

    problem_id: int
    generation_level: int
    solution_id: int


class TemplateVariables(BaseModel):
    """
    [职责] 模板变量：渲染 prompt 所需的命名字符串字段。
    [边界] 允许额外字段（新模板可引入新变量）；缺省字段在渲染时视为空；
          字段同时接受 camelCase 键（compilerMessage 等），渲染上下文两种写法都提供。
    [上游关系] bot 分发层根据题目/提交/编译信息填充。
    [下游关系] prompt.render_prompt 读取；GenerationModel.template_variables 以 JSON 保存。
    """

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    problem: Optional[str] = None  # docstring: 题面
    solution: Optional[str] = None  # docstring: 参考解法
    code: Optional[str] = None  # docstring: 用户源代码
    compiler_message: Optional[str] = None  # docstring: 编译器输出
    contester_message: Optional[str] = None  # docstring: 评测系统判定说明
    program_error_trace: Optional[str] = None  # docstring: 运行错误堆栈
    user_message: Optional[str] = None  # docstring: 用户追问

    def as_context(self) -> Dict[str, Any]:
        """渲染上下文（去除 None 字段；snake_case 与 camelCase 键并存）。"""
        context = self.model_dump(exclude_none=True)
        for key, value in list(context.items()):
            context.setdefault(to_camel(key), value)
        return context


class ChatMessage(BaseModel):
    """对话消息：is_user=True 为用户轮次，否则为助手轮次。"""

    model_config = ConfigDict(frozen=True)

    text: str = Field(default="")
    is_user: bool = Field(default=True)


class Template(BaseModel):
    """模板：name -> 模板文本（Jinja2 语法）。"""

    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., min_length=1, max_length=200)
    template: str = Field(default="")


class GenerationTask(BaseModel):
    """
    [职责] GenerationTask：一次生成请求（瞬态输入）。
    [边界] 不携带 id/status；持久化由 store 负责。
    [上游关系] bot 分发层构造，或 regenerate 从已有 Generation 还原。
    [下游关系] orchestrator 查重与 pipeline 渲染/调用。
    """

    model_config = ConfigDict(extra="forbid")

    previous_generation_id: int = Field(default=ROOT_GENERATION_ID, ge=0)  # docstring: 0 表示根节点
    problem_id: int = Field(...)
    solution_id: int = Field(default=0, ge=0)  # docstring: 0 表示题目级解释（不针对具体提交）
    generation_level: int = Field(default=1, ge=0)
    template_name: str = Field(..., min_length=1, max_length=200)
    template_variables: TemplateVariables = Field(default_factory=TemplateVariables)

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.problem_id, self.generation_level, self.solution_id)

    @classmethod
    def from_generation(cls, generation: "Generation") -> "GenerationTask":
        """从已有记录还原任务（相同指纹、模板、变量与对话前驱）。"""
        return cls(
            previous_generation_id=generation.previous_generation_id,
            problem_id=generation.problem_id,
            solution_id=generation.solution_id,
            generation_level=generation.generation_level,
            template_name=generation.template_name,
            template_variables=generation.template_variables.model_copy(deep=True),
        )


class Generation(BaseModel):
    """
    [职责] Generation：持久化生成记录的只读快照。
    [边界] 不包含 ORM 行为；修改一律通过 store。
    [上游关系] GenerationModel 经 model_validate(from_attributes) 转换。
    [下游关系] orchestrator 返回给调用方；bot 分发层展示 output 与投票。
    """

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(...)
    problem_id: int = Field(...)
    solution_id: int = Field(default=0)
    generation_level: int = Field(default=1)
    previous_generation_id: int = Field(default=ROOT_GENERATION_ID)
    input: str = Field(default="")  # docstring: 渲染后的 prompt（生成中为空）
    output: str = Field(default="")  # docstring: 模型回复（生成中为空）
    template_name: str = Field(default="")
    template_variables: TemplateVariables = Field(default_factory=TemplateVariables)
    up_votes: int = Field(default=0, ge=0)
    down_votes: int = Field(default=0, ge=0)
    status: GenerationStatus = Field(...)
    created_at: Optional[datetime] = Field(default=None)

    @field_validator("previous_generation_id", mode="before")
    @classmethod
    def _coerce_root(cls, v: Any) -> int:
        return ROOT_GENERATION_ID if v is None else v  # docstring: NULL 外键视为根节点

    @field_validator("template_variables", mode="before")
    @classmethod
    def _coerce_variables(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.problem_id, self.generation_level, self.solution_id)

    @property
    def is_ready(self) -> bool:
        return self.status == STATUS_READY

    @property
    def is_failed(self) -> bool:
        return self.status == STATUS_FAILED
