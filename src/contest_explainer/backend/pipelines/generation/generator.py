# src/contest_explainer/backend/pipelines/generation/generator.py

"""
[职责] generation generator：ChatEngine 基于 LlamaIndex LLM 抽象执行对话补全，负责上下文窗口裁剪与响应文本提取。
[边界] 不渲染模板；不访问 DB；不做重试；任何失败（网络/配额/空响应）统一抛 ChatEngineError。
[上游关系] generation pipeline 传入有序 ChatMessage 序列（历史对话 + 本轮 prompt）。
[下游关系] 返回文本写入 Generation.output。
"""

from __future__ import annotations

import inspect
import logging
import time
from inspect import Parameter
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from contest_explainer.backend.schemas.generation import ChatMessage
from contest_explainer.backend.utils.constants import DURATION_MS_KEY
from contest_explainer.backend.utils.errors import ChatEngineError
from contest_explainer.backend.utils.logging_ import get_logger, log_event


__all__ = ["ChatEngine", "fit_context", "default_token_counter"]

TokenCounter = Callable[[str], int]  # docstring: 文本 -> token 数

DEFAULT_MAX_CONTEXT_TOKENS = 12000  # docstring: 发送给模型的历史窗口上限
DEFAULT_MAX_MESSAGE_CHARS = 20000  # docstring: 窗口为空时单条消息的字符截断长度


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """
    [职责] 过滤参数，仅保留目标函数支持的关键字。
    [边界] 不做值校验；仅做参数名过滤。
    """
    try:
        sig = inspect.signature(fn)  # docstring: 读取可用参数
    except (TypeError, ValueError):
        return {}  # docstring: 无签名时回退为空
    for p in sig.parameters.values():
        if p.kind == Parameter.VAR_KEYWORD:
            return dict(kwargs)  # docstring: 支持 **kwargs 时全部透传
    return {k: v for k, v in kwargs.items() if k in sig.parameters}


def _normalize_provider(provider: str) -> str:
    return str(provider or "").strip().lower()  # docstring: provider 归一化


def default_token_counter() -> TokenCounter:
    """
    [职责] 返回 LlamaIndex 全局 tokenizer 的计数函数。
    [边界] tokenizer 由 llama_index 懒加载（tiktoken）；测试可注入简单计数器替代。
    """
    from llama_index.core.utils import get_tokenizer

    tokenizer = get_tokenizer()
    return lambda text: len(tokenizer(str(text or "")))


def _build_mock_llm(*, max_tokens: int = 64) -> Any:
    """
    [职责] 构造 LlamaIndex MockLLM（离线/本地调试）。
    [边界] MockLLM 回显输入片段，不代表真实模型行为。
    """
    from llama_index.core.llms import MockLLM

    return MockLLM(max_tokens=max_tokens)


def _resolve_llm(
    *,
    provider: str,
    model_name: str,
    generation_config: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    [职责] 根据 provider/model 构造 LlamaIndex LLM 实例。
    [边界] 仅支持 openai/mock；未知 provider 抛错。
    [上游关系] ChatEngine.from_settings 调用。
    """
    provider_key = _normalize_provider(provider)
    model = str(model_name or "").strip()
    cfg = {k: v for k, v in dict(generation_config or {}).items() if v is not None}

    if provider_key in {"mock", "local"}:
        return _build_mock_llm()
    if provider_key == "openai":
        from llama_index.llms.openai import OpenAI  # docstring: OpenAI LLM

        kwargs = {"model": model, **cfg}  # docstring: OpenAI 参数快照
        return OpenAI(**_filter_kwargs(OpenAI.__init__, kwargs))

    raise ValueError(f"unsupported chat provider: {provider}")


def _to_llama_messages(messages: Sequence[ChatMessage]) -> List[Any]:
    """ChatMessage(is_user) -> LlamaIndex ChatMessage(role=user/assistant)。"""
    from llama_index.core.llms import ChatMessage as LlamaChatMessage
    from llama_index.core.llms import MessageRole

    return [
        LlamaChatMessage(role=MessageRole.USER if m.is_user else MessageRole.ASSISTANT, content=m.text)
        for m in messages
    ]


async def _call_llm(*, llm: Any, messages: Sequence[Any], generation_config: Optional[Mapping[str, Any]] = None) -> Any:
    """
    [职责] 调用 LLM（优先异步 achat，其次同步 chat）。
    [边界] 不解析输出；仅返回原始响应对象。
    """
    cfg = dict(generation_config or {})
    if hasattr(llm, "achat"):
        kwargs = _filter_kwargs(llm.achat, cfg)
        return await llm.achat(messages, **kwargs)
    if hasattr(llm, "chat"):
        kwargs = _filter_kwargs(llm.chat, cfg)
        return llm.chat(messages, **kwargs)
    raise AttributeError("LLM instance missing chat interfaces")


def _extract_text(response: Any) -> str:
    """
    [职责] 从 LLM 响应中提取文本内容。
    [边界] 只做字段探测；ChatResponse.message.content 优先。
    """
    if response is None:
        return ""
    msg = getattr(response, "message", None)
    if msg is not None and hasattr(msg, "content"):
        return str(getattr(msg, "content") or "")  # docstring: ChatResponse.message.content
    if hasattr(response, "text"):
        return str(getattr(response, "text") or "")  # docstring: CompletionResponse.text
    if isinstance(response, str):
        return response
    return ""


def fit_context(
    messages: Sequence[ChatMessage],
    *,
    count_tokens: TokenCounter,
    max_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
    max_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
) -> List[ChatMessage]:
    """
    [职责] 上下文窗口裁剪：按顺序累加 token，超过 max_tokens 时从最旧消息开始丢弃。
    [边界] 若最终窗口为空（最后一条消息本身超限），回退为首尾两条消息（各截断到 max_chars）；
           只有一条消息时仅发送该条截断结果。
    """
    window: List[ChatMessage] = []
    counts: List[int] = []
    total = 0
    for msg in messages:
        n = int(count_tokens(msg.text))
        window.append(msg)
        counts.append(n)
        total += n
        while total > max_tokens and window:
            total -= counts.pop(0)  # docstring: 丢弃最旧消息
            window.pop(0)

    if window or not messages:
        return window

    first, last = messages[0], messages[-1]
    if len(messages) == 1:
        return [ChatMessage(text=first.text[:max_chars], is_user=first.is_user)]
    return [
        ChatMessage(text=first.text[:max_chars], is_user=first.is_user),
        ChatMessage(text=last.text[:max_chars], is_user=last.is_user),
    ]


class ChatEngine:
    """
    [职责] ChatEngine：complete(ordered_messages) -> text。
    [边界] 单次调用；不缓存；不重试。
    [上游关系] GenerationOrchestrator 注入；pipeline 调用 complete。
    [下游关系] LlamaIndex LLM（OpenAI / MockLLM）。
    """

    def __init__(
        self,
        llm: Any,
        *,
        count_tokens: Optional[TokenCounter] = None,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
        generation_config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._llm = llm  # docstring: LlamaIndex LLM（或具备 achat/chat 的兼容对象）
        self._count_tokens = count_tokens  # docstring: None 时首次调用再加载 tokenizer
        self.max_context_tokens = int(max_context_tokens)
        self.max_message_chars = int(max_message_chars)
        self._generation_config = dict(generation_config or {})
        self._logger = get_logger("chat_engine")

    @classmethod
    def from_settings(cls, settings: Any = None) -> "ChatEngine":
        """按 Settings（CHAT_PROVIDER/CHAT_MODEL/CHAT_TEMPERATURE 等）构造。"""
        if settings is None:
            from contest_explainer.config import settings as _settings

            settings = _settings
        llm = _resolve_llm(
            provider=settings.CHAT_PROVIDER,
            model_name=settings.CHAT_MODEL,
            generation_config={"temperature": settings.CHAT_TEMPERATURE},
        )
        return cls(
            llm,
            max_context_tokens=settings.CHAT_MAX_CONTEXT_TOKENS,
            max_message_chars=settings.CHAT_MAX_MESSAGE_CHARS,
        )

    @property
    def count_tokens(self) -> TokenCounter:
        if self._count_tokens is None:
            self._count_tokens = default_token_counter()
        return self._count_tokens

    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        """
        [职责] 裁剪上下文并调用模型，返回非空回复文本。
        [边界] 空消息序列、调用异常、空回复均抛 ChatEngineError。
        """
        if not messages:
            raise ChatEngineError(message="no messages to send")

        window = fit_context(
            messages,
            count_tokens=self.count_tokens,
            max_tokens=self.max_context_tokens,
            max_chars=self.max_message_chars,
        )
        started = time.perf_counter()
        log_event(
            self._logger,
            logging.DEBUG,
            "chat start",
            fields={"messages": len(messages), "sent_messages": len(window)},
        )
        try:
            response = await _call_llm(
                llm=self._llm,
                messages=_to_llama_messages(window),
                generation_config=self._generation_config,
            )
        except Exception as exc:
            raise ChatEngineError(
                message=f"chat completion failed: {exc.__class__.__name__}",
                cause=exc,
            ) from exc

        text = _extract_text(response)
        duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if not text.strip():
            raise ChatEngineError(message="empty completion", detail={DURATION_MS_KEY: duration_ms})
        log_event(
            self._logger,
            logging.DEBUG,
            "chat end",
            fields={DURATION_MS_KEY: duration_ms, "reply_chars": len(text)},
        )
        return text
