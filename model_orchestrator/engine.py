"""
Execution engine: run a SelectedRoute as a sequential cascade.

Candidates are tried strictly one after another, never in parallel. Each
provider tried yields exactly one CascadeAttempt. A rate-limited candidate is
retried in place with bounded backoff (tenacity), any other failure advances
to the next candidate immediately. An exhausted cascade returns a failed
GenerationResult carrying every attempt; it does not raise.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt

from model_orchestrator.adapters.base import (
    AdapterFailure,
    AdapterRegistry,
    AdapterResult,
    AdapterSuccess,
    ErrorKind,
    GeneratedImage,
    GenerationRequest,
    ImageRequest,
    ProviderAdapter,
)
from model_orchestrator.catalog import ProviderId, ProviderProfile
from model_orchestrator.costs import CostAccountant, ImageUsage
from model_orchestrator.observability import metrics as obs_metrics
from model_orchestrator.rate_limit import BackoffPolicy, wait_rate_limit
from model_orchestrator.routing import SelectedRoute

logger = structlog.get_logger()

Request = Union[GenerationRequest, ImageRequest]
SleepFn = Callable[[float], Awaitable[Any]]


class CascadeAttempt(BaseModel):
    """One provider tried during a single logical request."""

    provider: ProviderId
    model: str
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    tries: int = 1
    duration_ms: float = 0.0


class GenerationResult(BaseModel):
    success: bool
    task: str = ""
    provider: Optional[ProviderId] = None
    model: Optional[str] = None
    text: str = ""
    images: list[GeneratedImage] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    attempts: list[CascadeAttempt] = Field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def used_fallback(self) -> bool:
        return self.success and len(self.attempts) > 1


class _Cancelled:
    """Sentinel outcome: the caller's cancel signal fired."""


_CANCELLED = _Cancelled()


def _should_retry(outcome: Any) -> bool:
    return isinstance(outcome, AdapterFailure) and outcome.is_rate_limit


def _describe(attempts: list[CascadeAttempt]) -> str:
    return " | ".join(f"{a.provider.value}/{a.model}: {a.error or 'unknown error'}" for a in attempts)


class ExecutionEngine:
    """Runs routes against registered adapters and records spend on success."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        accountant: CostAccountant,
        retry_policy: Optional[BackoffPolicy] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._adapters = adapters
        self._accountant = accountant
        self._policy = retry_policy or BackoffPolicy.from_config()
        self._sleep = sleep or asyncio.sleep

    @property
    def accountant(self) -> CostAccountant:
        return self._accountant

    async def execute(
        self,
        route: SelectedRoute,
        request: Request,
        cancel_event: Optional[asyncio.Event] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        """Try [primary, *fallback_chain] in order until one succeeds."""
        task = route.task.value
        candidates = route.candidates
        attempts: list[CascadeAttempt] = []

        for index, profile in enumerate(candidates):
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(task, attempts)

            adapter = self._adapters.for_profile(profile)
            if adapter is None:
                attempts.append(
                    CascadeAttempt(
                        provider=profile.provider,
                        model=profile.model,
                        success=False,
                        error="no adapter registered",
                        error_kind=ErrorKind.INVALID_REQUEST,
                        tries=0,
                    )
                )
                logger.warning("cascade_no_adapter", task=task, provider=profile.provider.value, model=profile.model)
                continue

            start = time.perf_counter()
            outcome, tries = await self._call_with_backoff(adapter, profile, request, task, cancel_event)
            duration_ms = round((time.perf_counter() - start) * 1000, 1)

            if isinstance(outcome, _Cancelled):
                attempts.append(
                    CascadeAttempt(
                        provider=profile.provider,
                        model=profile.model,
                        success=False,
                        error="cancelled",
                        tries=tries,
                        duration_ms=duration_ms,
                    )
                )
                return self._cancelled(task, attempts)

            if isinstance(outcome, AdapterSuccess):
                attempts.append(
                    CascadeAttempt(
                        provider=profile.provider,
                        model=profile.model,
                        success=True,
                        tries=tries,
                        duration_ms=duration_ms,
                    )
                )
                return self._succeed(task, profile, request, outcome, attempts, metadata)

            attempts.append(
                CascadeAttempt(
                    provider=profile.provider,
                    model=profile.model,
                    success=False,
                    error=outcome.message,
                    error_kind=outcome.kind,
                    tries=tries,
                    duration_ms=duration_ms,
                )
            )
            nxt = candidates[index + 1] if index + 1 < len(candidates) else None
            logger.warning(
                "cascade_attempt_failed",
                task=task,
                provider=profile.provider.value,
                model=profile.model,
                kind=outcome.kind.value,
                status=outcome.status_code,
                tries=tries,
                error=outcome.message[:200],
                next_provider=nxt.provider.value if nxt else None,
            )
            if nxt is not None:
                obs_metrics.record_fallback(profile.provider.value, nxt.provider.value, task)

        obs_metrics.record_cascade_exhausted(task)
        detail = _describe(attempts)
        logger.error("cascade_exhausted", task=task, attempts=len(attempts), detail=detail)
        return GenerationResult(
            success=False,
            task=task,
            attempts=attempts,
            error=f"All providers failed for task '{task}' → {detail or 'no candidates'}",
        )

    # ── Internals ──

    async def _call_with_backoff(
        self,
        adapter: ProviderAdapter,
        profile: ProviderProfile,
        request: Request,
        task: str,
        cancel_event: Optional[asyncio.Event],
    ) -> tuple[Union[AdapterResult, _Cancelled], int]:
        """Call one candidate, retrying in place while it reports a rate limit."""
        tries = 0

        async def invoke() -> Union[AdapterResult, _Cancelled]:
            nonlocal tries
            if cancel_event is not None and cancel_event.is_set():
                return _CANCELLED
            tries += 1
            return await self._invoke(adapter, profile, request, task, cancel_event)

        async def sleep(seconds: float) -> None:
            await self._interruptible_sleep(seconds, cancel_event)

        def before_sleep(retry_state: RetryCallState) -> None:
            failure = retry_state.outcome.result()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            obs_metrics.record_rate_limit_retry(profile.provider.value, profile.model)
            logger.info(
                "rate_limit_backoff",
                task=task,
                provider=profile.provider.value,
                model=profile.model,
                attempt=retry_state.attempt_number,
                max_attempts=self._policy.max_attempts,
                delay_seconds=round(delay, 2),
                retry_after=failure.retry_after,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=wait_rate_limit(self._policy),
            retry=retry_if_result(_should_retry),
            sleep=sleep,
            before_sleep=before_sleep,
            # Budget spent: hand back the last rate-limit failure instead of raising RetryError.
            retry_error_callback=lambda state: state.outcome.result(),
        )
        outcome = await retrying(invoke)
        return outcome, tries

    async def _invoke(
        self,
        adapter: ProviderAdapter,
        profile: ProviderProfile,
        request: Request,
        task: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Union[AdapterResult, _Cancelled]:
        async with obs_metrics.track_provider_call(
            provider=profile.provider.value,
            model=profile.model,
            task=task,
        ) as call_state:
            if cancel_event is None:
                result = await adapter.call(profile, request)
            else:
                call = asyncio.ensure_future(adapter.call(profile, request))
                waiter = asyncio.ensure_future(cancel_event.wait())
                try:
                    done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for fut in (call, waiter):
                        if not fut.done():
                            fut.cancel()
                if call not in done:
                    call_state["outcome"] = "cancelled"
                    await asyncio.gather(call, return_exceptions=True)
                    logger.info("provider_call_cancelled", task=task, provider=profile.provider.value)
                    return _CANCELLED
                result = call.result()
            call_state["outcome"] = "success" if result.ok else result.kind.value
        return result

    async def _interruptible_sleep(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, waiter):
                if not fut.done():
                    fut.cancel()

    def _succeed(
        self,
        task: str,
        profile: ProviderProfile,
        request: Request,
        outcome: AdapterSuccess,
        attempts: list[CascadeAttempt],
        metadata: Optional[dict[str, Any]],
    ) -> GenerationResult:
        images = None
        if isinstance(request, ImageRequest) and outcome.images:
            images = [ImageUsage(resolution="4k" if request.resolution == "4k" else "1k", count=len(outcome.images))]
        record = self._accountant.record_usage(
            profile.provider,
            profile.model,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            images=images,
            metadata={"task": task, **(metadata or {})},
        )
        if len(attempts) > 1:
            logger.info(
                "cascade_fallback_succeeded",
                task=task,
                primary=f"{attempts[0].provider.value}/{attempts[0].model}",
                winner=f"{profile.provider.value}/{profile.model}",
                attempts=len(attempts),
            )
        else:
            logger.debug("cascade_succeeded", task=task, provider=profile.provider.value, model=profile.model)
        return GenerationResult(
            success=True,
            task=task,
            provider=profile.provider,
            model=profile.model,
            text=outcome.text,
            images=outcome.images,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            cost_usd=record.total_cost,
            attempts=attempts,
        )

    @staticmethod
    def _cancelled(task: str, attempts: list[CascadeAttempt]) -> GenerationResult:
        logger.info("cascade_cancelled", task=task, attempts=len(attempts))
        return GenerationResult(
            success=False,
            task=task,
            attempts=attempts,
            error="cancelled",
            cancelled=True,
        )
