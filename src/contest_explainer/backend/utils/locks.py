# src/contest_explainer/backend/utils/locks.py

"""
[职责] FingerprintLocks：为“查重 + 插入占位记录”提供协程级互斥区（全局单锁或按指纹分锁）。
[边界] 仅在单进程 asyncio 协作调度内生效；不提供跨进程/跨实例协调；不持有任何 I/O。
[上游关系] GenerationOrchestrator 在 submit/regenerate 的 check-then-insert 阶段获取。
[下游关系] 保证同一指纹的并发提交不会同时通过“未找到”检查。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable

from .constants import LOCK_SCOPE_FINGERPRINT, LOCK_SCOPE_GLOBAL


class FingerprintLocks:
    """Global lock or an on-demand arena of per-fingerprint locks."""

    def __init__(self, scope: str = LOCK_SCOPE_GLOBAL) -> None:
        normalized = str(scope or "").strip().lower()
        if normalized not in (LOCK_SCOPE_GLOBAL, LOCK_SCOPE_FINGERPRINT):
            raise ValueError(f"unsupported lock scope: {scope}")
        self.scope = normalized  # docstring: global / fingerprint
        self._global = asyncio.Lock()  # docstring: 全局模式下唯一的锁
        self._locks: Dict[Hashable, asyncio.Lock] = {}  # docstring: 指纹 -> 锁
        self._holders: Dict[Hashable, int] = {}  # docstring: 指纹 -> 持有/等待者计数

    def __len__(self) -> int:
        """当前存活的分锁数量（全局模式恒为 0）。"""
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """
        [职责] 进入 key 对应的互斥区。
        [边界] 分锁模式下无人持有/等待时立即回收该锁，arena 不随指纹数量增长。
        """
        if self.scope == LOCK_SCOPE_GLOBAL:
            async with self._global:
                yield
            return

        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[key] - 1
            if remaining:
                self._holders[key] = remaining
            else:
                self._holders.pop(key, None)
                self._locks.pop(key, None)  # docstring: 无竞争时回收
