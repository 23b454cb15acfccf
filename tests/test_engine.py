"""Tests for the sequential cascade: fallback, rate-limit backoff, cancellation, costing."""

import asyncio

import httpx
import pytest

from fakes import FakeAdapter, ok, rate_limited, registry_of, transient
from model_orchestrator.adapters.base import AdapterSuccess, ErrorKind, GeneratedImage, GenerationRequest, ImageRequest
from model_orchestrator.catalog import MODELS, Modality, ProviderId
from model_orchestrator.engine import ExecutionEngine
from model_orchestrator.rate_limit import BackoffPolicy
from model_orchestrator.routing import RoutingProfile, SelectedRoute, TaskType

REQUEST = GenerationRequest(prompt="Write a haiku about fractions")


def _route(*keys: str, task: TaskType = TaskType.GENERAL) -> SelectedRoute:
    primary, *rest = (MODELS[k] for k in keys)
    return SelectedRoute(task=task, profile=RoutingProfile.DEFAULT, primary=primary, fallback_chain=rest)


class TestSuccessfulPrimary:
    """The first available candidate answers."""

    @pytest.mark.asyncio
    async def test_primary_success_single_attempt(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [ok("first try")])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.success
        assert result.provider is ProviderId.OPENAI
        assert result.model == "gpt-5.1"
        assert result.text == "first try"
        assert len(result.attempts) == 1
        assert result.attempts[0].success
        assert not result.used_fallback
        assert anthropic.calls == []
        assert sleeper.delays == []


class TestRateLimitBackoff:
    """Rate limits retry the same candidate within a bounded budget."""

    @pytest.mark.asyncio
    async def test_rate_limited_primary_then_fallback(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited()])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok("from claude")])
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.success
        assert result.provider is ProviderId.ANTHROPIC
        assert result.text == "from claude"
        assert result.used_fallback
        # One attempt per provider, retries folded into `tries`
        assert [a.provider for a in result.attempts] == [ProviderId.OPENAI, ProviderId.ANTHROPIC]
        first = result.attempts[0]
        assert not first.success
        assert first.error_kind is ErrorKind.RATE_LIMIT
        assert first.tries == 3
        assert len(openai.calls) == 3
        assert len(anthropic.calls) == 1
        assert sleeper.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_then_recovery_stays_on_same_candidate(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited(), ok("second try")])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.provider is ProviderId.OPENAI
        assert result.text == "second try"
        assert len(result.attempts) == 1
        assert result.attempts[0].tries == 2
        assert anthropic.calls == []
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_used(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited(retry_after=7), ok()])
        engine = make_engine(openai)

        result = await engine.execute(_route("gpt5"), REQUEST)

        assert result.success
        assert sleeper.delays == [7.0]

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_capped(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited(retry_after=600), ok()])
        engine = make_engine(openai)

        await engine.execute(_route("gpt5"), REQUEST)

        assert sleeper.delays == [60.0]

    @pytest.mark.asyncio
    async def test_single_attempt_policy_never_sleeps(self, accountant, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited()])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = ExecutionEngine(
            registry_of(openai, anthropic),
            accountant,
            retry_policy=BackoffPolicy(max_attempts=1),
            sleep=sleeper,
        )

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.provider is ProviderId.ANTHROPIC
        assert len(openai.calls) == 1
        assert sleeper.delays == []


class TestOtherFailures:
    """Non rate-limit failures advance to the next candidate immediately."""

    @pytest.mark.asyncio
    async def test_transient_failure_advances_without_backoff(self, make_engine, sleeper):
        openai = FakeAdapter(ProviderId.OPENAI, [transient()])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok()])
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.provider is ProviderId.ANTHROPIC
        assert result.attempts[0].error_kind is ErrorKind.TRANSIENT
        assert result.attempts[0].tries == 1
        assert len(openai.calls) == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_bad_request_quoting_429_digits_is_not_retried(self, make_engine, sleeper):
        request = httpx.Request("POST", "https://api.example.com/v1/chat")
        response = httpx.Response(400, request=request)
        too_long = httpx.HTTPStatusError("prompt is 14290 tokens, too long", request=request, response=response)
        openai = FakeAdapter(ProviderId.OPENAI, [too_long])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok()])
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.provider is ProviderId.ANTHROPIC
        assert result.attempts[0].error_kind is ErrorKind.INVALID_REQUEST
        assert result.attempts[0].tries == 1
        assert len(openai.calls) == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_adapter_exception_becomes_failed_attempt(self, make_engine):
        openai = FakeAdapter(ProviderId.OPENAI, [RuntimeError("connection reset by peer")])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok()])
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.success
        assert result.attempts[0].error == "connection reset by peer"
        assert result.attempts[0].error_kind is ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_exhausted_cascade_returns_failure(self, make_engine, accountant):
        openai = FakeAdapter(ProviderId.OPENAI, [transient("503 Service Unavailable")])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [transient("overloaded")])
        engine = make_engine(openai, anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert not result.success
        assert not result.cancelled
        assert len(result.attempts) == 2
        assert result.error.startswith("All providers failed for task 'general'")
        assert "openai/gpt-5.1: 503 Service Unavailable" in result.error
        assert "anthropic/claude-sonnet-4-5-20250929: overloaded" in result.error
        assert accountant.get_usage_log() == []

    @pytest.mark.asyncio
    async def test_missing_adapter_is_skipped(self, make_engine):
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok()])
        engine = make_engine(anthropic)

        result = await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)

        assert result.provider is ProviderId.ANTHROPIC
        assert result.attempts[0].tries == 0
        assert result.attempts[0].error == "no adapter registered"


class TestCostRecording:
    """Winning calls are priced and logged with task metadata."""

    @pytest.mark.asyncio
    async def test_success_records_cost(self, make_engine, accountant):
        openai = FakeAdapter(ProviderId.OPENAI, [ok(input_tokens=100_000, output_tokens=10_000)])
        engine = make_engine(openai)

        result = await engine.execute(_route("gpt5"), REQUEST, metadata={"lesson": "fractions-101"})

        assert result.cost_usd == pytest.approx(0.225)
        assert accountant.get_session_cost() == 0.225
        (record,) = accountant.get_usage_log()
        assert record.provider is ProviderId.OPENAI
        assert record.model == "gpt-5.1"
        assert record.metadata == {"task": "general", "lesson": "fractions-101"}

    @pytest.mark.asyncio
    async def test_image_success_records_image_cost(self, make_engine, accountant):
        gemini = FakeAdapter(
            ProviderId.GOOGLE,
            [AdapterSuccess(images=[GeneratedImage(base64_data="aGVsbG8=")])],
            modality=Modality.IMAGE,
        )
        engine = make_engine(gemini)
        request = ImageRequest(prompt="A number line", resolution="4k")

        result = await engine.execute(_route("gemini_pro_image", task=TaskType.IMAGE_DIAGRAM), request)

        assert result.success
        assert result.images[0].base64_data == "aGVsbG8="
        assert result.cost_usd == pytest.approx(0.240)
        assert accountant.get_usage_log()[0].image_cost == pytest.approx(0.240)


class TestCancellation:
    """External cancel signal vs. task cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, make_engine):
        openai = FakeAdapter(ProviderId.OPENAI)
        engine = make_engine(openai)
        cancel = asyncio.Event()
        cancel.set()

        result = await engine.execute(_route("gpt5"), REQUEST, cancel_event=cancel)

        assert result.cancelled
        assert not result.success
        assert result.error == "cancelled"
        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_cascade(self, accountant, policy):
        cancel = asyncio.Event()

        async def sleep_then_cancel(seconds: float) -> None:
            cancel.set()
            await asyncio.sleep(3600)

        openai = FakeAdapter(ProviderId.OPENAI, [rate_limited()])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = ExecutionEngine(registry_of(openai, anthropic), accountant, retry_policy=policy, sleep=sleep_then_cancel)

        result = await asyncio.wait_for(
            engine.execute(_route("gpt5", "claude_sonnet"), REQUEST, cancel_event=cancel),
            timeout=5,
        )

        assert result.cancelled
        assert len(openai.calls) == 1
        assert anthropic.calls == []
        assert result.attempts[-1].error == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_interrupts_in_flight_call(self, make_engine):
        cancel = asyncio.Event()

        class SlowAdapter(FakeAdapter):
            async def _call(self, profile, request):
                self.calls.append((profile, request))
                await asyncio.sleep(3600)

        openai = SlowAdapter(ProviderId.OPENAI)
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = make_engine(openai, anthropic)
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        result = await asyncio.wait_for(
            engine.execute(_route("gpt5", "claude_sonnet"), REQUEST, cancel_event=cancel),
            timeout=5,
        )

        assert result.cancelled
        assert len(openai.calls) == 1
        assert anthropic.calls == []

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, make_engine):
        openai = FakeAdapter(ProviderId.OPENAI, [asyncio.CancelledError()])
        anthropic = FakeAdapter(ProviderId.ANTHROPIC)
        engine = make_engine(openai, anthropic)

        with pytest.raises(asyncio.CancelledError):
            await engine.execute(_route("gpt5", "claude_sonnet"), REQUEST)
        assert anthropic.calls == []
