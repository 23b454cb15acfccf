"""
Task routing policy: abstract task type → primary model + ordered fallback chain.

Each TaskType maps to an ordered preference list of catalog keys per operating
profile. Routing walks the list, keeps only providers that currently have
credentials, and returns the first as primary and the rest (original order) as
the fallback chain. If nothing in the list is usable, a short universal order
per modality is tried before giving up with a configuration error.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from model_orchestrator.availability import AvailabilityDetector, AvailabilitySnapshot
from model_orchestrator.catalog import MODELS, Modality, ProviderProfile
from model_orchestrator.config import get_settings
from model_orchestrator.errors import NoProviderConfiguredError

logger = structlog.get_logger()


class TaskType(str, Enum):
    """Closed set of abstract work categories."""

    OUTLINE_PLANNING = "outline_planning"
    EXERCISE_GENERATION = "exercise_generation"
    REASONING_VALIDATION = "reasoning_validation"
    VISUAL_PLANNING = "visual_planning"
    CONTENT_GENERATION = "content_generation"
    CASE_STUDY = "case_study"
    EXAM_GENERATION = "exam_generation"
    TRANSLATION = "translation"
    CODE_GENERATION = "code_generation"
    QUICK_CLASSIFICATION = "quick_classification"
    GENERAL = "general"
    IMAGE_HEADER = "image:header"
    IMAGE_DIAGRAM = "image:diagram"
    IMAGE_CONCEPTUAL = "image:conceptual"

    @property
    def modality(self) -> Modality:
        return Modality.IMAGE if self.value.startswith("image:") else Modality.TEXT


class RoutingProfile(str, Enum):
    DEFAULT = "default"
    COST_BALANCED = "cost-balanced"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "RoutingProfile":
        """Lenient parse of AI_MODEL_PROFILE; unknown values mean DEFAULT."""
        value = (raw or "").strip().lower()
        if value in ("cost-balanced", "cost_balanced", "costbalanced"):
            return cls.COST_BALANCED
        return cls.DEFAULT


T = TaskType

# Quality-first table: local reasoning/prose models first, then cloud.
DEFAULT_PREFERENCES: dict[TaskType, list[str]] = {
    T.OUTLINE_PLANNING: ["deepseek_r1_70b", "qwen3_30b", "groq_llama70b", "gemini_pro", "claude_sonnet", "gpt5"],
    T.EXERCISE_GENERATION: ["deepseek_r1_70b", "qwen3_30b", "groq_llama70b", "claude_sonnet", "gpt5"],
    T.REASONING_VALIDATION: ["deepseek_r1_70b", "deepseek_reasoner", "claude_sonnet", "gpt5"],
    T.VISUAL_PLANNING: ["deepseek_r1_70b", "qwen3_30b", "claude_sonnet", "gpt5"],
    T.CONTENT_GENERATION: ["qwen3_30b", "qwen2_5_14b", "claude_sonnet", "groq_llama70b", "gemini_pro", "gpt5"],
    T.CASE_STUDY: ["qwen3_30b", "claude_sonnet", "groq_llama70b", "gpt5"],
    T.EXAM_GENERATION: ["deepseek_r1_70b", "qwen3_30b", "claude_sonnet", "gpt5"],
    T.TRANSLATION: ["qwen3_30b", "qwen_plus", "gemini_pro", "claude_sonnet", "gpt5"],
    T.CODE_GENERATION: ["deepseek_r1_70b", "qwen3_30b", "claude_sonnet", "codestral", "gpt5"],
    T.QUICK_CLASSIFICATION: ["qwen2_5_14b", "llama3_1_8b", "groq_llama70b", "gemini_flash", "claude_haiku", "gpt5_nano"],
    T.GENERAL: ["qwen3_30b", "deepseek_r1_70b", "qwen2_5_14b", "groq_llama70b", "gemini_flash", "claude_sonnet", "gpt5"],
    T.IMAGE_HEADER: ["runware_gen", "gemini_pro_image", "qwen_image", "flux_dev"],
    T.IMAGE_DIAGRAM: ["gemini_pro_image", "gemini_flash_image"],
    T.IMAGE_CONCEPTUAL: ["runware_gen", "gemini_pro_image", "flux_dev"],
}

# Cheaper/faster table, selected with AI_MODEL_PROFILE=cost-balanced.
COST_BALANCED_PREFERENCES: dict[TaskType, list[str]] = {
    T.OUTLINE_PLANNING: ["gpt4o", "claude_sonnet", "gpt4o_mini", "gemini_pro", "groq_llama70b"],
    T.EXERCISE_GENERATION: ["gpt4o", "claude_sonnet", "gpt4o_mini", "groq_llama70b"],
    T.REASONING_VALIDATION: ["gpt4o", "claude_sonnet", "gpt4o_mini"],
    T.VISUAL_PLANNING: ["gpt4o_mini", "gpt4o", "claude_sonnet", "groq_llama70b"],
    T.CONTENT_GENERATION: ["gpt4o", "claude_sonnet", "gpt4o_mini", "gemini_pro", "groq_llama70b"],
    T.CASE_STUDY: ["gpt4o", "claude_sonnet", "gpt4o_mini", "groq_llama70b"],
    T.EXAM_GENERATION: ["gpt4o", "claude_sonnet", "gpt4o_mini"],
    T.TRANSLATION: ["gpt4o_mini", "gpt4o", "gemini_pro", "claude_sonnet"],
    T.CODE_GENERATION: ["gpt4o", "claude_sonnet", "gpt4o_mini"],
    T.QUICK_CLASSIFICATION: ["gpt4o_mini", "groq_llama70b", "gemini_flash", "openrouter_llama70b"],
    T.GENERAL: ["gpt4o_mini", "gpt4o", "claude_haiku", "groq_llama70b", "gemini_flash"],
    T.IMAGE_HEADER: ["runware_gen", "gemini_flash_image"],
    T.IMAGE_DIAGRAM: ["gemini_flash_image", "gemini_pro_image"],
    T.IMAGE_CONCEPTUAL: ["runware_gen", "gemini_flash_image"],
}

PREFERENCE_TABLES: dict[RoutingProfile, dict[TaskType, list[str]]] = {
    RoutingProfile.DEFAULT: DEFAULT_PREFERENCES,
    RoutingProfile.COST_BALANCED: COST_BALANCED_PREFERENCES,
}

# Provider-agnostic last resort, used when no preferred entry is available.
UNIVERSAL_FALLBACK: dict[RoutingProfile, dict[Modality, list[str]]] = {
    RoutingProfile.DEFAULT: {
        Modality.TEXT: ["groq_llama70b", "gemini_flash", "claude_sonnet", "gpt5", "mistral_small",
                        "deepseek_chat", "qwen_plus", "openrouter_llama70b", "qwen3_30b"],
        Modality.IMAGE: ["runware_gen", "gemini_pro_image", "qwen_image", "flux_dev"],
    },
    RoutingProfile.COST_BALANCED: {
        Modality.TEXT: ["groq_llama70b", "gemini_flash", "claude_sonnet", "gpt4o", "mistral_small",
                        "deepseek_chat", "qwen_plus", "openrouter_llama70b", "qwen3_30b"],
        Modality.IMAGE: ["runware_gen", "gemini_flash_image", "qwen_image", "flux_dev"],
    },
}


class SelectedRoute(BaseModel):
    """Primary model plus ordered, availability-filtered fallbacks."""

    model_config = ConfigDict(frozen=True)

    task: TaskType
    profile: RoutingProfile
    primary: ProviderProfile
    fallback_chain: list[ProviderProfile] = []
    used_universal_fallback: bool = False

    @property
    def candidates(self) -> list[ProviderProfile]:
        return [self.primary, *self.fallback_chain]


def _apply_overrides(
    tables: dict[RoutingProfile, dict[TaskType, list[str]]],
    overrides: dict[str, Any],
) -> dict[RoutingProfile, dict[TaskType, list[str]]]:
    """Merge `profiles.<profile>.<task>: [keys]` from models.yaml over the built-in tables."""
    merged = {profile: dict(table) for profile, table in tables.items()}
    for profile_name, tasks in (overrides.get("profiles") or {}).items():
        profile = RoutingProfile.parse(profile_name)
        for task_name, keys in (tasks or {}).items():
            try:
                task = TaskType(task_name)
            except ValueError:
                logger.warning("routing_override_unknown_task", task=task_name, profile=profile.value)
                continue
            known = [k for k in keys or [] if k in MODELS]
            unknown = [k for k in keys or [] if k not in MODELS]
            if unknown:
                logger.warning("routing_override_unknown_models", task=task.value, models=unknown)
            if known:
                merged[profile][task] = known
    return merged


class TaskRouter:
    """Resolves a TaskType to a SelectedRoute against current availability."""

    def __init__(
        self,
        availability: AvailabilityDetector,
        preferences: Optional[dict[RoutingProfile, dict[TaskType, list[str]]]] = None,
        universal_order: Optional[dict[RoutingProfile, dict[Modality, list[str]]]] = None,
        profile: Optional[RoutingProfile] = None,
    ) -> None:
        self._availability = availability
        if preferences is None:
            preferences = _apply_overrides(PREFERENCE_TABLES, get_settings().model_routing)
        self._preferences = preferences
        self._universal = universal_order or UNIVERSAL_FALLBACK
        self._profile = profile

    @property
    def active_profile(self) -> RoutingProfile:
        if self._profile is not None:
            return self._profile
        return RoutingProfile.parse(get_settings().routing.model_profile)

    def preference_list(self, task: TaskType, profile: RoutingProfile) -> list[ProviderProfile]:
        """Ordered preference list for (task, profile); falls back to the default table."""
        keys = self._preferences.get(profile, {}).get(task)
        if not keys:
            keys = self._preferences.get(RoutingProfile.DEFAULT, {}).get(task, [])
        return [MODELS[k] for k in keys]

    def select_route(
        self,
        task: TaskType | str,
        profile: Optional[RoutingProfile | str] = None,
    ) -> SelectedRoute:
        """Pick primary + fallback chain for a task. Raises NoProviderConfiguredError."""
        task = TaskType(task)
        if profile is None:
            active = self.active_profile
        elif isinstance(profile, RoutingProfile):
            active = profile
        else:
            active = RoutingProfile.parse(profile)
        snapshot = self._availability.get_availability()

        usable = self._filter(self.preference_list(task, active), snapshot)
        used_universal = False
        if not usable:
            logger.warning("route_no_preferred_model", task=task.value, profile=active.value)
            universal = [MODELS[k] for k in self._universal.get(active, {}).get(task.modality, [])]
            usable = self._filter(universal, snapshot)
            used_universal = True
        if not usable:
            logger.error(
                "route_no_provider_configured",
                task=task.value,
                modality=task.modality.value,
                any_available=snapshot.any_available,
            )
            raise NoProviderConfiguredError(task.value, task.modality.value)

        route = SelectedRoute(
            task=task,
            profile=active,
            primary=usable[0],
            fallback_chain=usable[1:],
            used_universal_fallback=used_universal,
        )
        logger.info(
            "route_selected",
            task=task.value,
            profile=active.value,
            primary=f"{route.primary.provider.value}/{route.primary.model}",
            fallback_chain=[p.model for p in route.fallback_chain],
            universal=used_universal,
        )
        return route

    @staticmethod
    def _filter(profiles: list[ProviderProfile], snapshot: AvailabilitySnapshot) -> list[ProviderProfile]:
        seen: set[str] = set()
        usable: list[ProviderProfile] = []
        for p in profiles:
            if p.key in seen or not snapshot.is_available(p.provider):
                continue
            seen.add(p.key)
            usable.append(p)
        return usable
