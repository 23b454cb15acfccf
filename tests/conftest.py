"""Shared pytest fixtures for model orchestrator tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from fakes import FrozenClock, SleepRecorder, registry_of
from model_orchestrator.adapters.base import ProviderAdapter
from model_orchestrator.costs import CostAccountant
from model_orchestrator.engine import ExecutionEngine
from model_orchestrator.rate_limit import BackoffPolicy


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 14, 23, 30, tzinfo=timezone.utc))


@pytest.fixture
def accountant(clock: FrozenClock) -> CostAccountant:
    return CostAccountant(clock=clock)


@pytest.fixture
def policy() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=10.0, retry_after_cap=60.0)


@pytest.fixture
def make_engine(accountant: CostAccountant, policy: BackoffPolicy, sleeper: SleepRecorder) -> Callable[..., ExecutionEngine]:
    def _make(*adapters: ProviderAdapter) -> ExecutionEngine:
        return ExecutionEngine(registry_of(*adapters), accountant, retry_policy=policy, sleep=sleeper)

    return _make


@pytest.fixture(autouse=True)
def _clean_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests never see real credentials or profile switches from the developer's shell."""
    for var in (
        "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY", "GOOGLE_AI_API_KEY",
        "GROQ_API_KEY", "MISTRAL_API_KEY", "DEEPSEEK_API_KEY", "QWEN_API_KEY", "DASHSCOPE_API_KEY",
        "OPENROUTER_API_KEY", "OLLAMA_BASE_URL", "RUNWARE_API_KEY", "HUGGINGFACE_API_KEY", "HF_TOKEN",
        "AI_MODEL_PROFILE", "PROMETHEUS_METRICS_ENABLED",
    ):
        monkeypatch.delenv(var, raising=False)
