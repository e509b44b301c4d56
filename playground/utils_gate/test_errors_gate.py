# playground/utils_gate/test_errors_gate.py

"""
[职责] errors gate：错误码规范、detail JSON-safe 校验、各具体错误的 code/http_status/retryable 合同。
[边界] 不涉及日志与 DB。
"""

from __future__ import annotations

import pytest

from contest_explainer.backend.utils.errors import (
    ChatEngineError,
    DialogChainError,
    DomainError,
    GenerationFailedError,
    GenerationNotFoundError,
    TemplateNotFoundError,
    TemplateRenderError,
    ensure_json_safe_detail,
    is_valid_error_code,
)


pytestmark = pytest.mark.utils_gate


@pytest.mark.parametrize(
    "code,ok",
    [
        ("GENERATION__NOT_FOUND", True),
        ("CHAT_ENGINE__FAILED", True),
        ("not_found", True),
        ("GENERATION", False),
        ("generation__not_found", False),
        ("", False),
    ],
)
def test_error_code_pattern(code: str, ok: bool) -> None:
    assert is_valid_error_code(code) is ok


def test_domain_error_rejects_bad_code_and_unsafe_detail() -> None:
    with pytest.raises(ValueError):
        DomainError(error_code="bad code", message="x")
    with pytest.raises(ValueError):
        DomainError(error_code="GENERATION__X", message="x", detail={"obj": object()})
    with pytest.raises(ValueError):
        ensure_json_safe_detail(["not", "a", "dict"])  # type: ignore[arg-type]


def test_domain_error_to_dict_and_cause_chain() -> None:
    cause = RuntimeError("root")
    err = DomainError(error_code="GENERATION__X", message="msg", detail={"k": 1}, cause=cause)
    assert err.to_dict() == {"code": "GENERATION__X", "message": "msg", "detail": {"k": 1}}
    assert err.__cause__ is cause
    assert str(err) == "msg"


def test_generation_errors() -> None:
    nf = GenerationNotFoundError(generation_id=5)
    assert (nf.error_code, nf.http_status, nf.retryable) == ("GENERATION__NOT_FOUND", 404, False)
    assert nf.detail == {"generation_id": 5}
    assert GenerationNotFoundError().detail == {}

    failed = GenerationFailedError(generation_id=7)
    assert (failed.error_code, failed.retryable) == ("GENERATION__FAILED", True)
    assert failed.generation_id == 7

    chain = DialogChainError(generation_id=3, message="cycle", depth=2)
    assert chain.detail == {"generation_id": 3, "depth": 2}


def test_template_and_chat_errors() -> None:
    tnf = TemplateNotFoundError(template_name="T")
    assert tnf.error_code == "TEMPLATE__NOT_FOUND"
    assert tnf.template_name == "T"

    render = TemplateRenderError(cause=SyntaxError("x"))
    assert render.http_status == 400

    chat = ChatEngineError(message="empty completion")
    assert (chat.error_code, chat.http_status, chat.retryable) == ("CHAT_ENGINE__FAILED", 503, True)
    assert isinstance(chat, DomainError)
