"""Tests for ContentOrchestrator: routing + cascade + post-processing end to end."""

import asyncio

import pytest
from pydantic import BaseModel

from fakes import FakeAdapter, ok, static_availability, transient
from model_orchestrator.adapters.base import AdapterSuccess, GeneratedImage
from model_orchestrator.catalog import Modality, ProviderId
from model_orchestrator.config import Settings
from model_orchestrator.errors import (
    CascadeExhaustedError,
    GenerationCancelledError,
    NoProviderConfiguredError,
    OutputFormatError,
)
from model_orchestrator.routing import PREFERENCE_TABLES, RoutingProfile, TaskRouter, TaskType
from model_orchestrator.service import JSON_INSTRUCTION, ContentOrchestrator


class Lesson(BaseModel):
    title: str
    objectives: list[str]


def _orchestrator(engine, *providers: ProviderId) -> ContentOrchestrator:
    availability = static_availability(*providers)
    router = TaskRouter(availability, preferences=PREFERENCE_TABLES, profile=RoutingProfile.DEFAULT)
    return ContentOrchestrator(settings=Settings(), availability=availability, router=router, engine=engine)


@pytest.mark.asyncio
async def test_generate_strips_reasoning_block(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok("<think>let me plan</think>\nFractions are parts.")])
    orchestrator = _orchestrator(make_engine(anthropic), ProviderId.ANTHROPIC)

    result = await orchestrator.generate(TaskType.GENERAL, "What is a fraction?")

    assert result.success
    assert result.provider is ProviderId.ANTHROPIC
    assert result.text == "Fractions are parts."
    assert anthropic.calls[0][0].model == "claude-sonnet-4-5-20250929"


@pytest.mark.asyncio
async def test_generate_falls_back_across_providers(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [transient()])
    openai = FakeAdapter(ProviderId.OPENAI, [ok("from gpt")])
    orchestrator = _orchestrator(make_engine(anthropic, openai), ProviderId.ANTHROPIC, ProviderId.OPENAI)

    result = await orchestrator.generate("content_generation", "Write an intro")

    assert result.text == "from gpt"
    assert [a.provider for a in result.attempts] == [ProviderId.ANTHROPIC, ProviderId.OPENAI]


@pytest.mark.asyncio
async def test_generate_without_any_provider_raises(make_engine):
    orchestrator = _orchestrator(make_engine())

    with pytest.raises(NoProviderConfiguredError):
        await orchestrator.generate(TaskType.GENERAL, "hello")


@pytest.mark.asyncio
async def test_generate_rejects_image_task(make_engine):
    orchestrator = _orchestrator(make_engine(), ProviderId.OPENAI)

    with pytest.raises(ValueError):
        await orchestrator.generate(TaskType.IMAGE_HEADER, "a banner")


@pytest.mark.asyncio
async def test_generate_structured_repairs_and_validates(make_engine):
    raw = '```json\n{"title": "Fractions", "objectives": ["Name parts", "Compare halves",],}\n```'
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok(raw)])
    orchestrator = _orchestrator(make_engine(anthropic), ProviderId.ANTHROPIC)

    structured = await orchestrator.generate_structured(
        TaskType.OUTLINE_PLANNING, "Outline a fractions lesson", Lesson, system_prompt="You are a curriculum designer."
    )

    assert structured.value == Lesson(title="Fractions", objectives=["Name parts", "Compare halves"])
    assert structured.result.provider is ProviderId.ANTHROPIC
    system_prompt = anthropic.calls[0][1].system_prompt
    assert system_prompt.startswith("You are a curriculum designer.")
    assert JSON_INSTRUCTION in system_prompt
    assert '"objectives"' in system_prompt


@pytest.mark.asyncio
async def test_generate_structured_unparseable_output(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok("Sorry, I cannot produce that lesson.")])
    orchestrator = _orchestrator(make_engine(anthropic), ProviderId.ANTHROPIC)

    with pytest.raises(OutputFormatError) as exc_info:
        await orchestrator.generate_structured(TaskType.OUTLINE_PLANNING, "Outline", Lesson)

    err = exc_info.value
    assert err.provider == "anthropic"
    assert err.model == "claude-sonnet-4-5-20250929"
    assert len(err.attempts) == 1
    assert err.context == "outline_planning"


@pytest.mark.asyncio
async def test_generate_structured_cascade_exhausted(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [transient("overloaded")])
    openai = FakeAdapter(ProviderId.OPENAI, [transient("503")])
    orchestrator = _orchestrator(make_engine(anthropic, openai), ProviderId.ANTHROPIC, ProviderId.OPENAI)

    with pytest.raises(CascadeExhaustedError) as exc_info:
        await orchestrator.generate_structured(TaskType.OUTLINE_PLANNING, "Outline", Lesson)

    assert len(exc_info.value.attempts) == 2
    assert "anthropic/claude-sonnet-4-5-20250929: overloaded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_generate_structured_cancelled(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC)
    orchestrator = _orchestrator(make_engine(anthropic), ProviderId.ANTHROPIC)
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(GenerationCancelledError):
        await orchestrator.generate_structured(TaskType.OUTLINE_PLANNING, "Outline", Lesson, cancel_event=cancel)
    assert anthropic.calls == []


@pytest.mark.asyncio
async def test_generate_image_uses_task_dimensions(make_engine):
    gemini = FakeAdapter(
        ProviderId.GOOGLE,
        [AdapterSuccess(images=[GeneratedImage(base64_data="aW1n")])],
        modality=Modality.IMAGE,
    )
    orchestrator = _orchestrator(make_engine(gemini), ProviderId.GOOGLE)

    result = await orchestrator.generate_image(TaskType.IMAGE_DIAGRAM, "Number line from 0 to 1")

    assert result.success
    profile, request = gemini.calls[0]
    assert profile.model == "gemini-3-pro-image-preview"
    assert (request.width, request.height, request.aspect_ratio) == (1200, 900, "4:3")
    assert request.resolution == "1k"
    assert result.cost_usd == pytest.approx(0.134)


@pytest.mark.asyncio
async def test_generate_image_rejects_text_task(make_engine):
    orchestrator = _orchestrator(make_engine(), ProviderId.GOOGLE)

    with pytest.raises(ValueError):
        await orchestrator.generate_image(TaskType.GENERAL, "a picture")


@pytest.mark.asyncio
async def test_probe_providers(make_engine, accountant):
    openai = FakeAdapter(ProviderId.OPENAI, [ok("OK")])
    groq = FakeAdapter(ProviderId.GROQ, [transient("connection refused")])
    orchestrator = _orchestrator(make_engine(openai, groq), ProviderId.OPENAI, ProviderId.GROQ)

    status = await orchestrator.probe_providers()

    assert status == {"openai": True, "groq": False}
    assert openai.calls[0][0].model == "gpt-5-nano"
    assert openai.calls[0][1].max_tokens == 16
    assert accountant.get_usage_log()[0].metadata["probe"] is True


@pytest.mark.asyncio
async def test_cost_summary(make_engine):
    anthropic = FakeAdapter(ProviderId.ANTHROPIC, [ok(input_tokens=1_000_000, output_tokens=0)])
    orchestrator = _orchestrator(make_engine(anthropic), ProviderId.ANTHROPIC)

    await orchestrator.generate(TaskType.GENERAL, "hello")
    summary = orchestrator.cost_summary()

    assert summary["session_usd"] == 3.0
    assert summary["daily_usd"] == 3.0
    assert summary["by_provider"] == {"anthropic": {"calls": 1, "spend": 3.0}}
