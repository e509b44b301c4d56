# playground/orchestrator_gate/test_orchestrator_gate.py

"""
[职责] orchestrator gate：锁定 single-flight 语义（并发去重、指纹隔离、仅查已有、regenerate 不合并、等待协议、惰性超时自愈）。
[边界] 使用假聊天引擎（可挂起/注入异常）与临时 sqlite；不访问外部 LLM。
[上游关系] GenerationOrchestrator + GenerationStore + TemplateStore。
[下游关系] bot 分发层依赖这些行为。
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from contest_explainer.backend.db.engine import init_db
from contest_explainer.backend.schemas.generation import GenerationTask
from contest_explainer.backend.services.generation_orchestrator import GenerationOrchestrator, SubmitResult
from contest_explainer.backend.utils.errors import (
    ChatEngineError,
    GenerationFailedError,
    GenerationNotFoundError,
)


pytestmark = pytest.mark.orchestrator_gate


def _task(**kw) -> GenerationTask:
    payload = dict(problem_id=1, solution_id=1, generation_level=1, template_name="T")
    payload.update(kw)
    return GenerationTask(**payload)


@pytest_asyncio.fixture(autouse=True)
async def _templates(template_store) -> None:
    await template_store.upsert_template("T", "rendered T")


@pytest.mark.asyncio
async def test_concurrent_duplicates_share_one_pipeline(orchestrator: GenerationOrchestrator, chat) -> None:
    chat.hold()
    results = await asyncio.gather(*(orchestrator.submit(_task()) for _ in range(5)))

    ids = {r.generation_id for r in results}
    assert len(ids) == 1
    assert sum(r.is_new for r in results) == 1

    chat.resume()
    gen = await orchestrator.await_completion(ids.pop())
    assert gen.status == "READY"
    await orchestrator.aclose()
    assert len(chat.calls) == 1  # docstring: 只运行一次 pipeline


@pytest.mark.asyncio
async def test_fingerprints_never_coalesce(orchestrator: GenerationOrchestrator) -> None:
    tasks = [
        _task(),
        _task(problem_id=2),
        _task(generation_level=2),
        _task(solution_id=2),
    ]
    results = await asyncio.gather(*(orchestrator.submit(t) for t in tasks))

    assert len({r.generation_id for r in results}) == len(tasks)
    assert all(r.is_new for r in results)


@pytest.mark.asyncio
async def test_same_fingerprint_other_fields_still_coalesce(orchestrator: GenerationOrchestrator) -> None:
    first = await orchestrator.submit(_task())
    second = await orchestrator.submit(_task(template_name="other", template_variables={"problem": "x"}))
    assert second == SubmitResult(generation_id=first.generation_id, is_new=False)


@pytest.mark.asyncio
async def test_allow_only_existing(orchestrator: GenerationOrchestrator, generation_store, chat) -> None:
    with pytest.raises(GenerationNotFoundError) as exc_info:
        await orchestrator.submit(_task(), allow_only_existing=True)
    assert exc_info.value.detail == {"problem_id": 1, "generation_level": 1, "solution_id": 1}
    assert await generation_store.find_by_fingerprint(_task().fingerprint) == []
    assert chat.calls == []

    created = await orchestrator.submit(_task())
    again = await orchestrator.submit(_task(), allow_only_existing=True)
    assert again == SubmitResult(generation_id=created.generation_id, is_new=False)


@pytest.mark.asyncio
async def test_concrete_scenario(orchestrator: GenerationOrchestrator, generation_store, chat, backdate) -> None:
    chat.hold()
    task = _task(problem_id=1, generation_level=1, solution_id=1, template_name="T")

    first = await orchestrator.submit(task)
    assert first.is_new
    gen = await generation_store.get_generation(first.generation_id)
    assert gen is not None and gen.status == "IN_PROGRESS"

    second = await orchestrator.submit(task)
    assert second == SubmitResult(generation_id=first.generation_id, is_new=False)

    chat.resume()
    ready = await orchestrator.await_completion(first.generation_id)
    assert (ready.status, ready.input, ready.output) == ("READY", "rendered T", "engine reply")

    third = await orchestrator.submit(task)
    assert third == SubmitResult(generation_id=first.generation_id, is_new=False)  # docstring: READY 仍去重

    # docstring: 卡住的生成被超时回收后，同指纹重新提交得到新记录
    chat.hold()
    stuck = await orchestrator.submit(_task(solution_id=5))
    assert stuck.is_new
    await backdate(stuck.generation_id)

    fresh = await orchestrator.submit(_task(solution_id=5))
    assert fresh.is_new
    assert fresh.generation_id != stuck.generation_id

    chat.resume()
    with pytest.raises(GenerationFailedError):
        await orchestrator.await_completion(stuck.generation_id)
    assert (await orchestrator.await_completion(fresh.generation_id)).status == "READY"
    await orchestrator.aclose()

    reclaimed = await generation_store.get_generation(stuck.generation_id, include_failed=True)
    assert reclaimed is not None and reclaimed.status == "FAILED"  # docstring: 迟到写入不覆盖


@pytest.mark.asyncio
async def test_failed_generation_does_not_block_retry(orchestrator: GenerationOrchestrator, chat) -> None:
    chat.error = ChatEngineError(message="quota exceeded")
    first = await orchestrator.submit(_task())
    with pytest.raises(GenerationFailedError) as exc_info:
        await orchestrator.await_completion(first.generation_id)
    assert exc_info.value.generation_id == first.generation_id

    chat.error = None
    retry = await orchestrator.submit(_task())
    assert retry.is_new
    assert retry.generation_id != first.generation_id
    assert (await orchestrator.await_completion(retry.generation_id)).output == "engine reply"


@pytest.mark.asyncio
async def test_missing_template_surfaces_as_failed(orchestrator: GenerationOrchestrator, chat) -> None:
    result = await orchestrator.submit(_task(template_name="missing"))
    assert result.is_new  # docstring: 提交本身成功

    with pytest.raises(GenerationFailedError):
        await orchestrator.await_completion(result.generation_id)
    assert chat.calls == []


@pytest.mark.asyncio
async def test_regenerate_always_creates_new_record(orchestrator: GenerationOrchestrator, generation_store) -> None:
    source = await orchestrator.submit(_task(template_variables={"problem": "p"}))
    await orchestrator.await_completion(source.generation_id)

    regen = await orchestrator.regenerate(source.generation_id)
    assert regen.is_new
    assert regen.generation_id != source.generation_id

    new = await orchestrator.await_completion(regen.generation_id)
    old = await generation_store.get_generation(source.generation_id)
    assert old is not None
    assert new.fingerprint == old.fingerprint
    assert new.template_name == old.template_name
    assert new.template_variables == old.template_variables
    assert new.previous_generation_id == old.previous_generation_id

    # docstring: 之后普通提交与最新记录合并
    again = await orchestrator.submit(_task())
    assert again == SubmitResult(generation_id=regen.generation_id, is_new=False)


@pytest.mark.asyncio
async def test_concurrent_regenerate_produces_distinct_records(orchestrator: GenerationOrchestrator) -> None:
    source = await orchestrator.submit(_task())
    await orchestrator.await_completion(source.generation_id)

    a, b = await asyncio.gather(
        orchestrator.regenerate(source.generation_id),
        orchestrator.regenerate(source.generation_id),
    )

    assert a.is_new and b.is_new
    assert len({source.generation_id, a.generation_id, b.generation_id}) == 3


@pytest.mark.asyncio
async def test_regenerate_unknown_or_failed(orchestrator: GenerationOrchestrator, chat) -> None:
    with pytest.raises(GenerationNotFoundError) as exc_info:
        await orchestrator.regenerate(424242)
    assert exc_info.value.generation_id == 424242

    chat.error = ChatEngineError(message="boom")
    failed = await orchestrator.submit(_task())
    with pytest.raises(GenerationFailedError):
        await orchestrator.await_completion(failed.generation_id)
    with pytest.raises(GenerationNotFoundError):
        await orchestrator.regenerate(failed.generation_id)


@pytest.mark.asyncio
async def test_await_completion_unknown_id(orchestrator: GenerationOrchestrator) -> None:
    with pytest.raises(GenerationNotFoundError):
        await orchestrator.await_completion(987654)


@pytest.mark.asyncio
async def test_await_completion_record_disappears(orchestrator: GenerationOrchestrator, generation_store, chat) -> None:
    chat.hold()
    result = await orchestrator.submit(_task())
    waiter = asyncio.create_task(orchestrator.await_completion(result.generation_id))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    assert await generation_store.remove_generation(result.generation_id)
    with pytest.raises(GenerationNotFoundError):
        await asyncio.wait_for(waiter, timeout=5)


@pytest.mark.asyncio
async def test_multiple_waiters_observe_same_record(orchestrator: GenerationOrchestrator, chat) -> None:
    chat.hold()
    result = await orchestrator.submit(_task())
    waiters = [asyncio.create_task(orchestrator.await_completion(result.generation_id)) for _ in range(3)]
    await asyncio.sleep(0.05)
    chat.resume()

    done = await asyncio.wait_for(asyncio.gather(*waiters), timeout=5)
    assert {g.id for g in done} == {result.generation_id}
    assert all(g.status == "READY" for g in done)
    assert len(chat.calls) == 1


@pytest.mark.asyncio
async def test_abandoned_waiter_does_not_affect_pipeline(orchestrator: GenerationOrchestrator, chat) -> None:
    chat.hold()
    result = await orchestrator.submit(_task())
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(orchestrator.await_completion(result.generation_id), timeout=0.05)

    chat.resume()
    assert (await orchestrator.await_completion(result.generation_id)).status == "READY"


@pytest.mark.asyncio
async def test_follow_up_uses_dialog_chain(orchestrator: GenerationOrchestrator, template_store, chat) -> None:
    await template_store.upsert_template("follow_up", "{{ user_message }}")
    root = await orchestrator.submit(_task())
    await orchestrator.await_completion(root.generation_id)

    follow = await orchestrator.submit(
        _task(
            generation_level=2,
            previous_generation_id=root.generation_id,
            template_name="follow_up",
            template_variables={"user_message": "more detail"},
        )
    )
    await orchestrator.await_completion(follow.generation_id)

    assert [m.text for m in chat.calls[-1]] == ["rendered T", "engine reply", "more detail"]
    assert [m.is_user for m in chat.calls[-1]] == [True, False, True]


@pytest.mark.asyncio
async def test_per_fingerprint_lock_scope(generation_store, template_store, chat) -> None:
    orch = GenerationOrchestrator(
        store=generation_store,
        templates=template_store,
        chat=chat,
        lock_scope="fingerprint",
        poll_interval_s=0.01,
    )
    try:
        results = await asyncio.gather(
            *(orch.submit(_task()) for _ in range(4)),
            *(orch.submit(_task(solution_id=9)) for _ in range(4)),
        )
        assert len({r.generation_id for r in results[:4]}) == 1
        assert len({r.generation_id for r in results[4:]}) == 1
        assert sum(r.is_new for r in results) == 2
        assert len(orch._locks) == 0  # docstring: 无竞争后分锁被回收
    finally:
        await orch.aclose()
    assert orch.pending == 0


@pytest.mark.asyncio
async def test_aclose_drains_background_pipelines(orchestrator: GenerationOrchestrator, generation_store, chat) -> None:
    chat.hold()
    results = [await orchestrator.submit(_task(solution_id=i)) for i in range(3)]
    assert orchestrator.pending == 3

    chat.resume()
    await orchestrator.aclose()

    assert orchestrator.pending == 0
    for r in results:
        gen = await generation_store.get_generation(r.generation_id)
        assert gen is not None and gen.status == "READY"


@pytest.mark.asyncio
async def test_from_settings_runs_end_to_end_with_mock_provider(tmp_path) -> None:
    settings = SimpleNamespace(
        CONTEST_EXPLAINER_DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'from_settings.db'}",
        CHAT_PROVIDER="mock",
        CHAT_MODEL="mock",
        CHAT_TEMPERATURE=None,
        CHAT_MAX_CONTEXT_TOKENS=1000,
        CHAT_MAX_MESSAGE_CHARS=1000,
        GENERATION_STALE_AFTER_S=300,
        GENERATION_TOP_LIMIT=3,
        GENERATION_LOCK_SCOPE="global",
        GENERATION_POLL_INTERVAL_S=0.01,
        GENERATION_MAX_DIALOG_DEPTH=10,
    )
    orch = GenerationOrchestrator.from_settings(settings)
    orch.chat._count_tokens = lambda text: len(str(text).split())  # docstring: 避免加载 tiktoken 编码文件
    try:
        await init_db(engine=orch._engine)
        await orch.templates.upsert_template("T", "Explain problem {{ problem_id }}")

        submitted = await orch.submit(_task())
        assert submitted.is_new is True

        gen = await orch.await_completion(submitted.generation_id)
        assert gen.status == "READY"
        assert gen.output
        assert orch.store.top_limit == 3
    finally:
        await orch.aclose()
    assert orch._engine is None  # docstring: aclose 释放自建 engine


@pytest.mark.asyncio
async def test_waiting_on_expired_generation_raises_failed(orchestrator: GenerationOrchestrator, chat, backdate) -> None:
    chat.hold()
    result = await orchestrator.submit(_task())
    await backdate(result.generation_id)

    with pytest.raises(GenerationFailedError):
        await orchestrator.await_completion(result.generation_id)  # docstring: 超时回收后状态为 FAILED

    chat.resume()
    await orchestrator.aclose()
    with pytest.raises(GenerationFailedError):
        await orchestrator.await_completion(result.generation_id)  # docstring: 迟到的 READY 写入被忽略
