# src/contest_explainer/backend/utils/errors.py

"""
[职责] 统一领域错误合同（error_code/message/detail/cause）与生成编排相关的具体错误类型。
[边界] 不依赖任何 Web 框架；不记录日志；仅表达错误语义与 http_status/retryable 提示。
[上游关系] repos/pipelines/services 抛出 DomainError 子类。
[下游关系] 调用方（bot 分发层）根据 error_code 决定回复文案；日志通过 to_dict() 记录结构化错误。
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

ERROR_CODE_PATTERN_AREA = re.compile(r"^[A-Z][A-Z0-9_]*(?:__[A-Z0-9_]+)+$")  # docstring: AREA__REASON 规范

STANDARD_ERROR_CODES = {  # docstring: 通用错误码集合
    "bad_request",
    "not_found",
    "pipeline_error",
    "external_dependency",
    "internal_error",
}


def is_valid_error_code(error_code: str) -> bool:
    """
    [职责] 校验错误码是否满足 AREA__REASON 规范或属于通用错误码。
    [边界] 仅做格式校验，不保证全局唯一。
    """

    if not error_code:
        return False  # docstring: 空字符串直接视为无效
    if error_code in STANDARD_ERROR_CODES:
        return True
    return bool(ERROR_CODE_PATTERN_AREA.match(error_code))


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """
    [职责] 校验 detail 是否可 JSON 序列化。
    [边界] detail 必须是 dict；不做降级或裁剪。
    """

    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")
    try:
        json.dumps(detail)  # docstring: JSON 序列化校验
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误最小合同：统一 error_code/message/detail/cause，并提供 http_status/retryable 提示。
    [边界] 仅表达语义，不承担日志、告警与对外输出。
    [上游关系] services/pipelines 抛出本错误；必要时携带 cause。
    [下游关系] 分发层根据 error_code 映射用户可见回复。
    """

    def __init__(
        self,
        *,
        error_code: str,
        message: str,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        http_status: int = 500,
        retryable: bool = False,
    ) -> None:
        if not is_valid_error_code(error_code):
            raise ValueError(f"invalid error_code: {error_code}")  # docstring: 防止不规范错误码泄露
        normalized_detail = detail or {}  # docstring: 归一化 detail，确保 dict
        ensure_json_safe_detail(normalized_detail)

        super().__init__(message)
        self.error_code = error_code  # docstring: 稳定错误码
        self.message = message  # docstring: 可读错误信息
        self.detail = normalized_detail  # docstring: JSON-safe 细节
        self.cause = cause  # docstring: 上游异常引用
        self.http_status = http_status  # docstring: HTTP 映射提示
        self.retryable = retryable  # docstring: 可重试提示

        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    def to_dict(self) -> Dict[str, Any]:
        """输出稳定的错误结构（不包含 cause）。"""
        return {
            "code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class GenerationNotFoundError(DomainError):
    """
    [职责] 生成记录不存在（未知 id、已失败被过滤、或已被超时回收/删除）。
    [边界] 同步抛给 submit(allow_only_existing)/regenerate/await_completion 的调用方。
    """

    def __init__(
        self,
        *,
        generation_id: Optional[int] = None,
        message: str = "generation not found",
        detail: Optional[ErrorDetail] = None,
    ) -> None:
        payload = dict(detail or {})
        if generation_id is not None:
            payload["generation_id"] = int(generation_id)
        super().__init__(
            error_code="GENERATION__NOT_FOUND",
            message=message,
            detail=payload,
            http_status=404,
            retryable=False,
        )
        self.generation_id = generation_id


class GenerationFailedError(DomainError):
    """
    [职责] 等待中的生成记录进入 FAILED 终态。
    [边界] 仅由 await_completion 抛出；失败原因已在 pipeline 日志中记录。
    """

    def __init__(self, *, generation_id: int, message: str = "generation failed") -> None:
        super().__init__(
            error_code="GENERATION__FAILED",
            message=message,
            detail={"generation_id": int(generation_id)},
            http_status=502,
            retryable=True,
        )
        self.generation_id = generation_id


class DialogChainError(DomainError):
    """对话链存在环或超过最大深度。"""

    def __init__(self, *, generation_id: int, message: str, depth: int) -> None:
        super().__init__(
            error_code="GENERATION__DIALOG_CHAIN",
            message=message,
            detail={"generation_id": int(generation_id), "depth": int(depth)},
            http_status=500,
            retryable=False,
        )


class TemplateNotFoundError(DomainError):
    """模板名无法解析。"""

    def __init__(self, *, template_name: str) -> None:
        super().__init__(
            error_code="TEMPLATE__NOT_FOUND",
            message=f"template not found: {template_name}",
            detail={"template_name": str(template_name)},
            http_status=404,
            retryable=False,
        )
        self.template_name = template_name


class TemplateRenderError(DomainError):
    """模板语法错误或渲染失败。"""

    def __init__(self, *, message: str = "template render failed", cause: Optional[Exception] = None) -> None:
        super().__init__(
            error_code="TEMPLATE__RENDER_FAILED",
            message=message,
            cause=cause,
            http_status=400,
            retryable=False,
        )


class ChatEngineError(DomainError):
    """
    [职责] 聊天引擎调用失败（网络/配额/空响应/响应格式异常）。
    [边界] 不区分 provider；原始异常保留在 cause 中。
    """

    def __init__(
        self,
        *,
        message: str = "chat engine error",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            error_code="CHAT_ENGINE__FAILED",
            message=message,
            detail=detail,
            cause=cause,
            http_status=503,
            retryable=True,
        )
