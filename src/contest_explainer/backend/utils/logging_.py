# src/contest_explainer/backend/utils/logging_.py

"""
[职责] 定义结构化日志字段规范与统一 logger 获取方式，提供最小 JSON 格式化与安全输出 helper。
[边界] 不绑定具体日志后端；不强制字段注入，仅提供工具。
[上游关系] pipelines/services 通过 get_logger/log_event 组织日志上下文。
[下游关系] 日志后端（stdout/file）消费结构化字段做检索与排障。
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .constants import (
    GENERATION_ID_KEY,
    GENERATION_LEVEL_KEY,
    PREVIOUS_GENERATION_ID_KEY,
    PROBLEM_ID_KEY,
    SOLUTION_ID_KEY,
    TEMPLATE_NAME_KEY,
)


DEFAULT_LOGGER_NAME = "contest_explainer"  # docstring: 统一 logger 根名称
DEFAULT_LOG_LEVEL = logging.INFO  # docstring: 默认日志级别
DEFAULT_MAX_TEXT_LEN = 160  # docstring: 安全文本预览长度

CONTEXT_FIELD_KEYS = (
    GENERATION_ID_KEY,
    PREVIOUS_GENERATION_ID_KEY,
    PROBLEM_ID_KEY,
    SOLUTION_ID_KEY,
    GENERATION_LEVEL_KEY,
    TEMPLATE_NAME_KEY,
)  # docstring: 可从任务/记录对象自动提取的字段

_LOG_RECORD_RESERVED = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}  # docstring: LogRecord 内置字段（不作为结构化额外字段）


class StructuredLogFormatter(logging.Formatter):
    """
    [职责] 将 LogRecord 转换为 JSON 字符串（含结构化字段）。
    [边界] 仅输出基础字段 + extra；不做敏感字段识别。
    """

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),  # docstring: 统一 UTC 时间戳
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: v for k, v in record.__dict__.items() if k not in _LOG_RECORD_RESERVED and v is not None
        }  # docstring: 仅保留非空 extra 字段
        payload.update(extras)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)  # docstring: 异常堆栈文本
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def _resolve_level(level: Optional[Any]) -> int:
    """将 "INFO"/20 等形式统一为 logging 级别整数。"""
    if level is None:
        return DEFAULT_LOG_LEVEL
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else DEFAULT_LOG_LEVEL


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: Optional[Any] = None,
    ensure_ascii: bool = True,
) -> logging.Logger:
    """
    [职责] 配置统一的 base logger（JSON formatter）。
    [边界] 不触碰 root logger；重复调用不会重复挂载 handler。
    [上游关系] 进程入口、脚本或 get_logger 调用。
    """

    if level is None:
        from contest_explainer.config import settings  # docstring: 延迟加载 settings 读取 LOG_LEVEL

        level = settings.LOG_LEVEL
    resolved = _resolve_level(level)

    logger = logging.getLogger(logger_name)
    logger.setLevel(resolved)

    has_handler = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "name", "") == "structured_json" for h in logger.handlers
    )
    if not has_handler:
        handler = logging.StreamHandler()
        handler.name = "structured_json"  # docstring: 标记 handler，避免重复挂载
        handler.setFormatter(StructuredLogFormatter(ensure_ascii=ensure_ascii))
        logger.addHandler(handler)

    logger.propagate = False  # docstring: 避免重复向 root 传播
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    [职责] 获取项目统一 logger（自动确保 base logger 已配置）。
    [边界] 子 logger 统一挂在 contest_explainer 根 logger 下。
    """

    base = logging.getLogger(DEFAULT_LOGGER_NAME)
    if not base.handlers:
        configure_logging()
    full_name = name or DEFAULT_LOGGER_NAME
    if name and not name.startswith(DEFAULT_LOGGER_NAME):
        full_name = f"{DEFAULT_LOGGER_NAME}.{name}"
    return logging.getLogger(full_name)


def build_log_fields(
    *,
    context: Optional[Any] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 统一构建结构化日志字段（generation/problem/solution 等 id）。
    [边界] 不校验字段合法性；None 值会被丢弃。
    [上游关系] log_event 调用；context 可为 GenerationTask/Generation/dict。
    """

    fields: Dict[str, Any] = {}
    if context is not None:
        for key in CONTEXT_FIELD_KEYS:
            value = _read_context_value(context, key)
            if value is not None:
                fields[key] = value
        if GENERATION_ID_KEY not in fields:
            record_id = _read_context_value(context, "id")  # docstring: Generation.id 映射为 generation_id
            if record_id is not None:
                fields[GENERATION_ID_KEY] = record_id

    if extra:
        for key, value in extra.items():
            if value is not None:
                fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """统一记录结构化日志（可自动附加任务/记录字段）。"""
    extra = build_log_fields(context=context, extra=fields)
    logger.log(level, message, extra=extra, exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """
    [职责] 截断长文本（避免把完整 prompt/回复写入日志）。
    [边界] 仅长度控制，不做敏感识别。
    """

    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def _read_context_value(context: Any, key: str) -> Optional[Any]:
    """从 dict 或对象属性中安全读取字段值。"""
    if isinstance(context, Mapping):
        return context.get(key)
    return getattr(context, key, None)
