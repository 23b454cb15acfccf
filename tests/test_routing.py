"""Tests for task routing: preference filtering, universal fallback, configuration errors."""

import pytest

from fakes import static_availability
from model_orchestrator.catalog import MODELS, Modality, ProviderId
from model_orchestrator.errors import NoProviderConfiguredError
from model_orchestrator.routing import (
    COST_BALANCED_PREFERENCES,
    DEFAULT_PREFERENCES,
    PREFERENCE_TABLES,
    RoutingProfile,
    TaskRouter,
    TaskType,
    _apply_overrides,
)


def _router(*providers: ProviderId, **kwargs) -> TaskRouter:
    kwargs.setdefault("preferences", PREFERENCE_TABLES)
    return TaskRouter(static_availability(*providers), **kwargs)


def test_every_task_has_a_non_empty_preference_list() -> None:
    for task in TaskType:
        assert DEFAULT_PREFERENCES.get(task) or COST_BALANCED_PREFERENCES.get(task)


def test_preference_lists_reference_catalog_keys_of_matching_modality() -> None:
    for table in PREFERENCE_TABLES.values():
        for task, keys in table.items():
            for key in keys:
                assert MODELS[key].modality == task.modality


def test_content_generation_only_openai_available() -> None:
    prefs = {RoutingProfile.DEFAULT: {TaskType.CONTENT_GENERATION: ["claude_sonnet", "gemini_pro", "gpt5"]}}
    route = _router(ProviderId.OPENAI, preferences=prefs).select_route(
        TaskType.CONTENT_GENERATION, RoutingProfile.DEFAULT
    )
    assert route.primary.key == "gpt5"
    assert route.fallback_chain == []
    assert route.used_universal_fallback is False


def test_primary_is_first_available_and_chain_keeps_order() -> None:
    router = _router(ProviderId.ANTHROPIC, ProviderId.OPENAI, ProviderId.GROQ)
    route = router.select_route(TaskType.CONTENT_GENERATION, RoutingProfile.DEFAULT)
    # qwen3_30b, qwen2_5_14b (ollama) skipped; gemini_pro (google) skipped
    assert route.primary.key == "claude_sonnet"
    assert [p.key for p in route.fallback_chain] == ["groq_llama70b", "gpt5"]


@pytest.mark.parametrize("task", [t for t in TaskType if t.modality is Modality.TEXT])
def test_route_is_filtered_subsequence_of_preferences(task: TaskType) -> None:
    available = {ProviderId.ANTHROPIC, ProviderId.GOOGLE, ProviderId.GROQ}
    route = _router(*available).select_route(task, RoutingProfile.DEFAULT)
    expected = [k for k in DEFAULT_PREFERENCES[task] if MODELS[k].provider in available]
    if expected:
        assert [p.key for p in route.candidates] == expected
    else:
        assert route.used_universal_fallback


def test_unavailable_providers_never_appear_in_chain() -> None:
    route = _router(ProviderId.OPENAI).select_route(TaskType.GENERAL, RoutingProfile.DEFAULT)
    assert all(p.provider == ProviderId.OPENAI for p in route.candidates)


def test_universal_fallback_when_no_preferred_provider_available() -> None:
    router = _router(ProviderId.MISTRAL)
    route = router.select_route(TaskType.REASONING_VALIDATION, RoutingProfile.DEFAULT)
    assert route.used_universal_fallback is True
    assert route.primary.provider == ProviderId.MISTRAL


def test_universal_fallback_orders_available_providers() -> None:
    prefs = {RoutingProfile.DEFAULT: {TaskType.GENERAL: ["claude_haiku"]}}
    router = _router(ProviderId.DEEPSEEK, ProviderId.MISTRAL, ProviderId.OPENROUTER, preferences=prefs)
    route = router.select_route(TaskType.GENERAL, RoutingProfile.DEFAULT)
    assert [p.provider for p in route.candidates] == [ProviderId.MISTRAL, ProviderId.DEEPSEEK, ProviderId.OPENROUTER]


@pytest.mark.parametrize("task", list(TaskType))
def test_no_providers_raises_configuration_error_for_every_task(task: TaskType) -> None:
    with pytest.raises(NoProviderConfiguredError) as exc_info:
        _router().select_route(task, RoutingProfile.DEFAULT)
    assert exc_info.value.task == task.value


def test_image_task_without_image_provider_raises() -> None:
    # Text-only credentials cannot serve an image task.
    with pytest.raises(NoProviderConfiguredError) as exc_info:
        _router(ProviderId.OPENAI, ProviderId.ANTHROPIC).select_route(TaskType.IMAGE_HEADER, RoutingProfile.DEFAULT)
    assert exc_info.value.modality == "image"


def test_image_route_uses_image_models() -> None:
    route = _router(ProviderId.GOOGLE, ProviderId.RUNWARE).select_route(TaskType.IMAGE_HEADER, RoutingProfile.DEFAULT)
    assert route.primary.key == "runware_gen"
    assert [p.key for p in route.fallback_chain] == ["gemini_pro_image"]
    assert all(p.modality is Modality.IMAGE for p in route.candidates)


def test_cost_balanced_profile_uses_its_own_table() -> None:
    router = _router(ProviderId.OPENAI, ProviderId.ANTHROPIC)
    route = router.select_route(TaskType.TRANSLATION, RoutingProfile.COST_BALANCED)
    assert route.profile is RoutingProfile.COST_BALANCED
    assert [p.key for p in route.candidates] == ["gpt4o_mini", "gpt4o", "claude_sonnet"]


def test_profile_falls_back_to_default_table_when_task_missing() -> None:
    prefs = {
        RoutingProfile.DEFAULT: {TaskType.GENERAL: ["claude_haiku"]},
        RoutingProfile.COST_BALANCED: {},
    }
    route = _router(ProviderId.ANTHROPIC, preferences=prefs).select_route(TaskType.GENERAL, RoutingProfile.COST_BALANCED)
    assert route.primary.key == "claude_haiku"


def test_active_profile_from_environment(monkeypatch) -> None:
    from model_orchestrator.config import get_settings

    monkeypatch.setenv("AI_MODEL_PROFILE", "cost_balanced")
    get_settings.cache_clear()
    try:
        router = _router(ProviderId.OPENAI)
        assert router.active_profile is RoutingProfile.COST_BALANCED
        assert router.select_route(TaskType.GENERAL).primary.key == "gpt4o_mini"
    finally:
        get_settings.cache_clear()


def test_explicit_profile_string_is_parsed() -> None:
    route = _router(ProviderId.OPENAI).select_route("general", "cost-balanced")
    assert route.profile is RoutingProfile.COST_BALANCED


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("cost-balanced", RoutingProfile.COST_BALANCED),
        ("COST_BALANCED", RoutingProfile.COST_BALANCED),
        ("costbalanced", RoutingProfile.COST_BALANCED),
        ("default", RoutingProfile.DEFAULT),
        ("", RoutingProfile.DEFAULT),
        (None, RoutingProfile.DEFAULT),
        ("premium", RoutingProfile.DEFAULT),
    ],
)
def test_routing_profile_parse(raw, expected) -> None:
    assert RoutingProfile.parse(raw) is expected


def test_yaml_overrides_replace_task_list_and_skip_unknown_keys() -> None:
    merged = _apply_overrides(
        PREFERENCE_TABLES,
        {"profiles": {"default": {"translation": ["gemini_flash", "not_a_model"], "bogus_task": ["gpt5"]}}},
    )
    assert merged[RoutingProfile.DEFAULT][TaskType.TRANSLATION] == ["gemini_flash"]
    # Built-in tables are untouched.
    assert DEFAULT_PREFERENCES[TaskType.TRANSLATION][0] == "qwen3_30b"


def test_duplicate_keys_are_collapsed() -> None:
    prefs = {RoutingProfile.DEFAULT: {TaskType.GENERAL: ["gpt5", "gpt5", "gpt5_mini"]}}
    route = _router(ProviderId.OPENAI, preferences=prefs).select_route(TaskType.GENERAL, RoutingProfile.DEFAULT)
    assert [p.key for p in route.candidates] == ["gpt5", "gpt5_mini"]
