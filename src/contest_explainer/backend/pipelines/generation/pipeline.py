# src/contest_explainer/backend/pipelines/generation/pipeline.py

"""
[职责] generation pipeline：为一条 IN_PROGRESS 记录编排 模板解析 → 对话链重建 → 渲染 → 模型调用 → 终态回写。
[边界] 不做查重；不抛异常给调用方（所有失败落为 FAILED 记录）；终态只通过 GenerationStore.set_terminal_status 写入。
[上游关系] GenerationOrchestrator 在锁外以后台任务方式启动。
[下游关系] await_completion/读取方通过 Result Store 观察结果。
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol, Sequence

from contest_explainer.backend.schemas.generation import ChatMessage, GenerationTask, Template
from contest_explainer.backend.services.generation_store import GenerationStore
from contest_explainer.backend.utils.constants import (
    DURATION_MS_KEY,
    GENERATION_ID_KEY,
    ROOT_GENERATION_ID,
    STATUS_FAILED,
    STATUS_READY,
)
from contest_explainer.backend.utils.errors import DomainError
from contest_explainer.backend.utils.logging_ import get_logger, log_event, truncate_text

from . import prompt as prompt_mod


__all__ = ["TemplateResolver", "ChatCompleter", "run_generation_pipeline"]

DEFAULT_MAX_DIALOG_DEPTH = 50  # docstring: 对话链最大回溯深度


class TemplateResolver(Protocol):
    async def resolve(self, name: str) -> Template: ...


class ChatCompleter(Protocol):
    async def complete(self, messages: Sequence[ChatMessage]) -> str: ...


async def _generate(
    *,
    task: GenerationTask,
    templates: TemplateResolver,
    store: GenerationStore,
    chat: ChatCompleter,
    max_dialog_depth: int,
) -> tuple[str, str]:
    """渲染并调用模型，返回 (input, output)；任一阶段失败直接抛出。"""
    template = await templates.resolve(task.template_name)  # docstring: 模板缺失时不会调用模型

    dialog: list[ChatMessage] = []
    if task.previous_generation_id != ROOT_GENERATION_ID:
        hops = min(task.generation_level, max_dialog_depth)  # docstring: 前驱数量不超过本记录的 generation_level
        dialog = await store.get_dialog_chain(task.previous_generation_id, max_depth=hops)

    rendered = prompt_mod.render_prompt(template.template, task.template_variables)
    output = await chat.complete(prompt_mod.build_messages(dialog, rendered))
    return rendered, output


async def run_generation_pipeline(
    *,
    generation_id: int,
    task: GenerationTask,
    templates: TemplateResolver,
    store: GenerationStore,
    chat: ChatCompleter,
    max_dialog_depth: int = DEFAULT_MAX_DIALOG_DEPTH,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    [职责] 执行一次生成并回写终态，返回写入的状态（READY/FAILED）。
    [边界] 终态写入是条件更新：记录已被超时回收时写入被忽略并记录告警。
    [上游关系] GenerationOrchestrator._spawn。
    [下游关系] GenerationStore.set_terminal_status。
    """
    log = logger or get_logger("generation_pipeline")
    fields = {GENERATION_ID_KEY: generation_id}
    started = time.perf_counter()

    try:
        rendered, output = await _generate(
            task=task,
            templates=templates,
            store=store,
            chat=chat,
            max_dialog_depth=max_dialog_depth,
        )
        status, input_text, output_text = STATUS_READY, rendered, output
    except Exception as exc:
        error_fields = dict(fields)
        if isinstance(exc, DomainError):
            error_fields["error"] = exc.to_dict()  # docstring: 结构化错误
        log_event(log, logging.ERROR, "generation failed", context=task, fields=error_fields, exc_info=exc)
        status, input_text, output_text = STATUS_FAILED, "", ""

    written = await store.set_terminal_status(
        generation_id,
        status=status,
        input=input_text,
        output=output_text,
    )
    duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if not written:
        log_event(
            log,
            logging.WARNING,
            "terminal status ignored, generation no longer in progress",
            context=task,
            fields={**fields, "status": status, DURATION_MS_KEY: duration_ms},
        )
        return status

    log_event(
        log,
        logging.INFO,
        "generation finished",
        context=task,
        fields={
            **fields,
            "status": status,
            DURATION_MS_KEY: duration_ms,
            "output_preview": truncate_text(output_text) if output_text else None,
        },
    )
    return status
