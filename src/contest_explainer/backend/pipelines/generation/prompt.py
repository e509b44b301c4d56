# src/contest_explainer/backend/pipelines/generation/prompt.py

"""
[职责] generation prompt：用 Jinja2 将模板与模板变量渲染为 prompt 文本，并与历史对话拼接为最终消息序列。
[边界] 不做 LLM 调用；不访问 DB；不做 token 控制（由 generator.fit_context 负责）。
[上游关系] generation pipeline 传入模板文本、TemplateVariables 与对话链。
[下游关系] generator.ChatEngine.complete 消费消息序列；渲染结果写入 Generation.input。
"""

from __future__ import annotations

from typing import Any, List, Mapping, Sequence, Union

from jinja2 import Environment, TemplateError

from contest_explainer.backend.schemas.generation import ChatMessage, TemplateVariables
from contest_explainer.backend.utils.errors import TemplateRenderError


__all__ = ["render_prompt", "build_messages"]

_ENV = Environment(
    autoescape=False,
    keep_trailing_newline=True,
)  # docstring: 纯文本 prompt，不做 HTML 转义；缺失变量渲染为空


def _coerce_context(variables: Union[TemplateVariables, Mapping[str, Any], None]) -> dict:
    """
    [职责] 将 TemplateVariables/dict 统一为渲染上下文。
    [边界] None 字段直接丢弃（渲染为空）。
    """
    if variables is None:
        return {}
    if isinstance(variables, TemplateVariables):
        return variables.as_context()
    return {k: v for k, v in dict(variables).items() if v is not None}


def render_prompt(template_text: str, variables: Union[TemplateVariables, Mapping[str, Any], None]) -> str:
    """
    [职责] 渲染 prompt 文本。
    [边界] 模板语法错误/渲染异常统一转为 TemplateRenderError（保留 cause）。
    [上游关系] run_generation_pipeline 调用。
    [下游关系] Generation.input 与最终 user 轮次。
    """
    try:
        template = _ENV.from_string(str(template_text or ""))  # docstring: 编译模板
        return template.render(**_coerce_context(variables))  # docstring: 渲染
    except TemplateError as exc:
        raise TemplateRenderError(message=f"template render failed: {exc}", cause=exc) from exc


def build_messages(dialog: Sequence[ChatMessage], prompt: str) -> List[ChatMessage]:
    """历史对话（root→最新）+ 本轮 prompt 作为最后一条 user 消息。"""
    return [*dialog, ChatMessage(text=prompt, is_user=True)]
