# playground/utils_gate/test_config_gate.py

"""
[职责] config gate：Settings 从环境变量读取生成编排相关配置。
[边界] 不读取真实 .env 内容做断言；只用 monkeypatch 注入的变量。
"""

from __future__ import annotations

import pytest

from contest_explainer.config import Settings


pytestmark = pytest.mark.utils_gate


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("GENERATION_STALE_AFTER_S", "60")
    monkeypatch.setenv("GENERATION_LOCK_SCOPE", "fingerprint")
    monkeypatch.setenv("GENERATION_POLL_INTERVAL_S", "0.5")
    monkeypatch.setenv("CHAT_PROVIDER", "mock")

    s = Settings()

    assert s.GENERATION_STALE_AFTER_S == 60
    assert s.GENERATION_LOCK_SCOPE == "fingerprint"
    assert s.GENERATION_POLL_INTERVAL_S == 0.5
    assert s.CHAT_PROVIDER == "mock"
    assert s.project_root.exists()


def test_settings_normalize_and_reject(monkeypatch) -> None:
    monkeypatch.setenv("GENERATION_LOCK_SCOPE", "  Fingerprint ")
    monkeypatch.setenv("CHAT_PROVIDER", "MOCK")
    s = Settings()
    assert s.GENERATION_LOCK_SCOPE == "fingerprint"
    assert s.CHAT_PROVIDER == "mock"

    monkeypatch.setenv("GENERATION_STALE_AFTER_S", "0")
    with pytest.raises(ValueError):
        Settings()
