# src/contest_explainer/backend/services/generation_orchestrator.py

"""
[职责] GenerationOrchestrator：生成请求的 single-flight 编排（submit / regenerate / await_completion）。
[边界] 只在“查重 + 插入占位记录”阶段持锁；模型调用在锁外以后台任务执行，结果只经 Result Store 回传；
       仅保证单进程内的互斥，不做跨实例协调。
[上游关系] bot 分发层在进程内调用。
[下游关系] GenerationStore（持久化/查重/超时回收）、TemplateStore、ChatEngine、generation pipeline。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Set

from sqlalchemy.ext.asyncio import AsyncEngine

from contest_explainer.backend.pipelines.generation.pipeline import (
    ChatCompleter,
    TemplateResolver,
    run_generation_pipeline,
)
from contest_explainer.backend.schemas.generation import Generation, GenerationTask
from contest_explainer.backend.services.generation_store import GenerationStore
from contest_explainer.backend.utils.constants import (
    GENERATION_ID_KEY,
    LOCK_SCOPE_GLOBAL,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
)
from contest_explainer.backend.utils.errors import GenerationFailedError, GenerationNotFoundError
from contest_explainer.backend.utils.locks import FingerprintLocks
from contest_explainer.backend.utils.logging_ import get_logger, log_event


__all__ = ["SubmitResult", "GenerationOrchestrator"]

DEFAULT_POLL_INTERVAL_S = 3.0  # docstring: await_completion 轮询间隔（秒）


@dataclass(frozen=True)
class SubmitResult:
    """submit/regenerate 的返回：记录 id 与是否启动了新的生成。"""

    generation_id: int
    is_new: bool


class GenerationOrchestrator:
    """
    [职责] 对同一指纹 (problem_id, generation_level, solution_id) 的并发请求去重，并异步执行生成。
    [边界] FAILED 记录不阻塞重试；regenerate 总是创建新记录；不自动重试失败的生成。
    """

    def __init__(
        self,
        *,
        store: GenerationStore,
        templates: TemplateResolver,
        chat: ChatCompleter,
        lock_scope: str = LOCK_SCOPE_GLOBAL,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        max_dialog_depth: int = 50,
    ) -> None:
        self.store = store  # docstring: Result Store
        self.templates = templates  # docstring: Template Store
        self.chat = chat  # docstring: Chat Engine
        self.poll_interval_s = float(poll_interval_s)
        self.max_dialog_depth = int(max_dialog_depth)
        self._locks = FingerprintLocks(lock_scope)  # docstring: check-then-insert 互斥区
        self._tasks: Set[asyncio.Task] = set()  # docstring: 运行中的后台 pipeline（强引用，防止被 GC）
        self._logger = get_logger("generation_orchestrator")
        self._engine: Optional[AsyncEngine] = None  # docstring: from_settings 创建时由本对象负责释放

    @classmethod
    def from_settings(cls, settings: Any = None) -> "GenerationOrchestrator":
        """
        [职责] 按 Settings 装配 engine/sessionmaker/stores/ChatEngine。
        [边界] 不建表（见 scripts/init_db.py）；engine 由 aclose() 释放。
        """
        from contest_explainer.backend.db.engine import create_engine, create_sessionmaker
        from contest_explainer.backend.pipelines.generation.generator import ChatEngine
        from contest_explainer.backend.services.template_store import TemplateStore

        if settings is None:
            from contest_explainer.config import settings as _settings

            settings = _settings

        engine = create_engine(url=settings.CONTEST_EXPLAINER_DATABASE_URL)
        session_factory = create_sessionmaker(engine)
        orchestrator = cls(
            store=GenerationStore(
                session_factory,
                stale_after_s=settings.GENERATION_STALE_AFTER_S,
                top_limit=settings.GENERATION_TOP_LIMIT,
            ),
            templates=TemplateStore(session_factory),
            chat=ChatEngine.from_settings(settings),
            lock_scope=settings.GENERATION_LOCK_SCOPE,
            poll_interval_s=settings.GENERATION_POLL_INTERVAL_S,
            max_dialog_depth=settings.GENERATION_MAX_DIALOG_DEPTH,
        )
        orchestrator._engine = engine
        return orchestrator

    @property
    def pending(self) -> int:
        """当前仍在运行的后台 pipeline 数量。"""
        return len(self._tasks)

    async def submit(self, task: GenerationTask, *, allow_only_existing: bool = False) -> SubmitResult:
        """
        Deduplicate task against non-failed records for its fingerprint, or start a new generation.

        Raises GenerationNotFoundError when nothing exists and allow_only_existing is set.
        """
        return await self._create(task, allow_only_existing=allow_only_existing, force=False)

    async def regenerate(self, generation_id: int, *, allow_only_existing: bool = False) -> SubmitResult:
        """
        Replay an existing record's task as a brand-new record (never coalesced).

        Raises GenerationNotFoundError for unknown, failed or expired ids.
        """
        source = await self.store.get_generation(generation_id)
        if source is None:
            raise GenerationNotFoundError(generation_id=generation_id)
        task = GenerationTask.from_generation(source)
        return await self._create(task, allow_only_existing=allow_only_existing, force=True)

    async def await_completion(self, generation_id: int) -> Generation:
        """
        Poll until the record leaves IN_PROGRESS.

        Returns the READY record; raises GenerationFailedError on FAILED and
        GenerationNotFoundError if the record is absent at any poll.
        """
        while True:
            generation = await self.store.get_generation(generation_id, include_failed=True)
            if generation is None:
                raise GenerationNotFoundError(generation_id=generation_id)
            if generation.status == STATUS_FAILED:
                raise GenerationFailedError(generation_id=generation_id)
            if generation.status != STATUS_IN_PROGRESS:
                return generation
            await asyncio.sleep(self.poll_interval_s)

    async def aclose(self) -> None:
        """等待所有后台 pipeline 结束，并释放 from_settings 创建的 engine。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def _create(self, task: GenerationTask, *, allow_only_existing: bool, force: bool) -> SubmitResult:
        """check-then-insert（锁内）+ 启动后台 pipeline（锁外）。"""
        async with self._locks.hold(task.fingerprint):
            if not force:
                existing = await self.store.find_by_fingerprint(task.fingerprint)
                if existing:
                    log_event(
                        self._logger,
                        logging.DEBUG,
                        "generation deduplicated",
                        context=task,
                        fields={GENERATION_ID_KEY: existing[0].id},
                    )
                    return SubmitResult(generation_id=existing[0].id, is_new=False)
                if allow_only_existing:
                    raise GenerationNotFoundError(
                        message="no existing generation for fingerprint",
                        detail=task.fingerprint._asdict(),
                    )
            generation = await self.store.create_generation(task)

        log_event(
            self._logger,
            logging.INFO,
            "generation started",
            context=task,
            fields={GENERATION_ID_KEY: generation.id, "forced": force},
        )
        self._spawn(generation.id, task)
        return SubmitResult(generation_id=generation.id, is_new=True)

    def _spawn(self, generation_id: int, task: GenerationTask) -> None:
        """以后台任务启动 pipeline；调用方不等待其结果。"""
        job = asyncio.create_task(
            run_generation_pipeline(
                generation_id=generation_id,
                task=task,
                templates=self.templates,
                store=self.store,
                chat=self.chat,
                max_dialog_depth=self.max_dialog_depth,
            ),
            name=f"generation-{generation_id}",
        )
        self._tasks.add(job)
        job.add_done_callback(self._on_done)

    def _on_done(self, job: asyncio.Task) -> None:
        self._tasks.discard(job)
        if job.cancelled():
            return
        exc = job.exception()
        if exc is not None:
            log_event(
                self._logger,
                logging.ERROR,
                "generation pipeline crashed before writing a terminal status",
                fields={"task": job.get_name()},
                exc_info=exc,
            )
