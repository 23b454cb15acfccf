"""
ContentOrchestrator: the single entry point callers use.

Wires availability → routing → execution → cost accounting, and adds the
text post-processing callers always want (reasoning-block cleanup, JSON
repair + Pydantic validation for structured output, image dimensions per
visual task).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Generic, Optional, TypeVar

import structlog
from pydantic import BaseModel

from model_orchestrator.adapters import AdapterRegistry, GenerationRequest, ImageRequest, build_default_registry
from model_orchestrator.availability import AvailabilityDetector
from model_orchestrator.catalog import Modality, ProviderId, list_models_for_provider
from model_orchestrator.config import Settings, get_settings
from model_orchestrator.costs import CostAccountant
from model_orchestrator.engine import ExecutionEngine, GenerationResult
from model_orchestrator.errors import CascadeExhaustedError, GenerationCancelledError, OutputFormatError
from model_orchestrator.output_repair import parse_model, strip_reasoning_blocks
from model_orchestrator.rate_limit import BackoffPolicy
from model_orchestrator.routing import RoutingProfile, SelectedRoute, TaskRouter, TaskType

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

# (width, height, aspect ratio) per visual task
IMAGE_DIMENSIONS: dict[TaskType, tuple[int, int, str]] = {
    TaskType.IMAGE_HEADER: (1280, 720, "16:9"),
    TaskType.IMAGE_DIAGRAM: (1200, 900, "4:3"),
    TaskType.IMAGE_CONCEPTUAL: (1024, 576, "16:9"),
}

JSON_INSTRUCTION = (
    "Respond with a single valid JSON value only. Do not wrap it in markdown fences "
    "and do not add commentary before or after it. Escape double quotes and newlines "
    "inside string values."
)

PROBE_PROMPT = "Reply with the single word OK."


class StructuredResult(BaseModel, Generic[T]):
    """Validated output model plus the generation that produced it."""

    value: T
    result: GenerationResult


class ContentOrchestrator:
    """Route, execute and account for generation requests."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        accountant: Optional[CostAccountant] = None,
        availability: Optional[AvailabilityDetector] = None,
        router: Optional[TaskRouter] = None,
        adapters: Optional[AdapterRegistry] = None,
        engine: Optional[ExecutionEngine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.availability = availability or AvailabilityDetector(
            ttl_seconds=self.settings.routing.availability_ttl_seconds
        )
        self.router = router or TaskRouter(self.availability)
        if engine is not None:
            self.engine = engine
            self.accountant = engine.accountant
            self.adapters = adapters
        else:
            self.accountant = accountant or CostAccountant()
            self.adapters = adapters or build_default_registry(self.settings)
            self.engine = ExecutionEngine(
                self.adapters,
                self.accountant,
                retry_policy=BackoffPolicy.from_config(self.settings.retry),
            )

    def select_route(self, task: TaskType | str, profile: Optional[RoutingProfile | str] = None) -> SelectedRoute:
        return self.router.select_route(task, profile)

    async def generate(
        self,
        task: TaskType | str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        profile: Optional[RoutingProfile | str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        """Text generation for a task. Raises NoProviderConfiguredError when nothing can serve it."""
        task = TaskType(task)
        if task.modality is not Modality.TEXT:
            raise ValueError(f"{task.value} is an image task; use generate_image()")
        route = self.router.select_route(task, profile)
        request = GenerationRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        result = await self.engine.execute(route, request, cancel_event=cancel_event, metadata=metadata)
        if result.success and result.text:
            result.text = strip_reasoning_blocks(result.text)
        return result

    async def generate_structured(
        self,
        task: TaskType | str,
        prompt: str,
        output_model: type[T],
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        profile: Optional[RoutingProfile | str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StructuredResult[T]:
        """
        Generate JSON and validate it against output_model.

        Raises CascadeExhaustedError when every provider failed,
        GenerationCancelledError when the cancel signal fired, and
        OutputFormatError (with attempts attached) when the winning output
        could not be repaired or validated.
        """
        task = TaskType(task)
        schema = json.dumps(output_model.model_json_schema(), ensure_ascii=False)
        instruction = f"{JSON_INSTRUCTION}\nThe JSON must conform to this schema:\n{schema}"
        system = f"{system_prompt}\n\n{instruction}" if system_prompt else instruction

        result = await self.generate(
            task,
            prompt,
            system_prompt=system,
            max_tokens=max_tokens,
            temperature=temperature,
            profile=profile,
            cancel_event=cancel_event,
            metadata=metadata,
        )
        if result.cancelled:
            raise GenerationCancelledError(task.value, result.attempts)
        if not result.success:
            raise CascadeExhaustedError(task.value, result.attempts)

        try:
            value = parse_model(result.text, output_model, context=task.value)
        except OutputFormatError as e:
            e.attempts = list(result.attempts)
            e.provider = result.provider.value if result.provider else None
            e.model = result.model
            logger.error(
                "structured_output_invalid",
                task=task.value,
                provider=e.provider,
                model=e.model,
                offset=e.offset,
                window=e.window[:400],
            )
            raise
        return StructuredResult[output_model](value=value, result=result)

    async def generate_image(
        self,
        task: TaskType | str,
        prompt: str,
        resolution: str = "1k",
        profile: Optional[RoutingProfile | str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        """Image generation sized for the visual task."""
        task = TaskType(task)
        if task.modality is not Modality.IMAGE:
            raise ValueError(f"{task.value} is a text task; use generate()")
        width, height, aspect_ratio = IMAGE_DIMENSIONS.get(task, (1024, 1024, "1:1"))
        request = ImageRequest(
            prompt=prompt,
            width=width,
            height=height,
            aspect_ratio=aspect_ratio,
            resolution=resolution,
        )
        route = self.router.select_route(task, profile)
        return await self.engine.execute(route, request, cancel_event=cancel_event, metadata=metadata)

    async def probe_providers(self) -> dict[str, bool]:
        """Connectivity check: one tiny generation per available text provider."""
        snapshot = self.availability.get_availability()
        routes: dict[ProviderId, SelectedRoute] = {}
        for provider in snapshot.available:
            text_models = [p for p in list_models_for_provider(provider) if p.modality is Modality.TEXT]
            if not text_models:
                continue
            # Cheapest priced model keeps probes inexpensive; unpriced entries go last.
            cheapest = min(
                text_models,
                key=lambda p: (
                    p.pricing is None,
                    (p.pricing.input_per_1m + p.pricing.output_per_1m) if p.pricing else 0.0,
                ),
            )
            routes[provider] = SelectedRoute(
                task=TaskType.QUICK_CLASSIFICATION,
                profile=self.router.active_profile,
                primary=cheapest,
            )

        request = GenerationRequest(prompt=PROBE_PROMPT, max_tokens=16, temperature=0.0)
        providers = list(routes)
        results = await asyncio.gather(
            *(self.engine.execute(routes[p], request, metadata={"probe": True}) for p in providers)
        )
        status = {p.value: r.success for p, r in zip(providers, results)}
        logger.info("providers_probed", ok=[k for k, v in status.items() if v], failed=[k for k, v in status.items() if not v])
        return status

    def cost_summary(self) -> dict[str, Any]:
        return {
            "session_usd": self.accountant.get_session_cost(),
            "daily_usd": self.accountant.get_daily_cost(),
            "by_provider": {
                p.value: spend.model_dump() for p, spend in self.accountant.summarize_by_provider().items()
            },
        }

    async def aclose(self) -> None:
        if self.adapters is not None:
            await self.adapters.aclose()
