"""
Cost accounting across providers: per call, per session, per provider per UTC day.

An explicit accountant instance is passed to the engine (no module globals).
Internal sums are kept at full precision; public figures are rounded to four
decimals at the read boundary so rounding error never compounds.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from model_orchestrator.catalog import ProviderId, lookup_pricing
from model_orchestrator.observability import metrics as obs_metrics

logger = structlog.get_logger()

UTC = timezone.utc


def _now_utc() -> datetime:
    return datetime.now(UTC)


class ImageUsage(BaseModel):
    """Images generated at one resolution tier."""

    resolution: Literal["1k", "4k"] = "1k"
    count: int = 1


class CostBreakdown(BaseModel):
    input_cost: float = 0.0
    output_cost: float = 0.0
    image_cost: float = 0.0
    total_cost: float = 0.0


class UsageRecord(BaseModel):
    """One completed provider call. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    provider: ProviderId
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    image_cost: float = 0.0
    total_cost: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderSpend(BaseModel):
    calls: int = 0
    spend: float = 0.0


def _image_cost(provider: ProviderId, model: str, images: Optional[list[ImageUsage]]) -> float:
    if not images:
        return 0.0
    pricing = lookup_pricing(provider, model)
    if pricing is None:
        return 0.0
    total = 0.0
    for usage in images:
        if usage.resolution == "4k" and pricing.image_per_4k:
            total += pricing.image_per_4k * usage.count
        elif pricing.image_per_1k:
            total += pricing.image_per_1k * usage.count
    return total


def estimate_cost(
    provider: ProviderId | str,
    model: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    images: Optional[list[ImageUsage]] = None,
    cost_override: Optional[float] = None,
) -> CostBreakdown:
    """Cost breakdown for a call. An override replaces the computed total outright."""
    if cost_override is not None:
        return CostBreakdown(total_cost=float(cost_override))
    provider_id = ProviderId(provider)
    pricing = lookup_pricing(provider_id, model)
    if pricing is None:
        # Unknown price: zero cost, never block the call.
        return CostBreakdown()
    input_cost = (input_tokens / 1_000_000) * pricing.input_per_1m
    output_cost = (output_tokens / 1_000_000) * pricing.output_per_1m
    image_cost = _image_cost(provider_id, model, images)
    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        image_cost=image_cost,
        total_cost=input_cost + output_cost + image_cost,
    )


class CostAccountant:
    """
    Running cost totals for the process.

    - session total: monotonically increasing until reset_session()
    - daily totals: per provider, cleared when the UTC date advances
    - usage log: append-only list of UsageRecord
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _now_utc
        self._lock = threading.Lock()
        self._session_total: float = 0.0
        self._daily_totals: dict[ProviderId, float] = {}
        self._usage_log: list[UsageRecord] = []
        self._current_date: str = self._date_stamp(self._clock())

    @staticmethod
    def _date_stamp(moment: datetime) -> str:
        if moment.tzinfo is not None:
            moment = moment.astimezone(UTC)
        return moment.date().isoformat()

    def _roll_over_if_needed(self, now: datetime) -> None:
        """Clear daily totals when the UTC date changed. Caller holds the lock."""
        today = self._date_stamp(now)
        if today != self._current_date:
            logger.info(
                "cost_daily_rollover",
                previous_date=self._current_date,
                new_date=today,
                previous_total=round(sum(self._daily_totals.values()), 4),
            )
            self._daily_totals.clear()
            self._current_date = today

    def record_usage(
        self,
        provider: ProviderId | str,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        images: Optional[list[ImageUsage]] = None,
        cost_override: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UsageRecord:
        """Price a completed call, append it to the log and fold it into the totals."""
        provider_id = ProviderId(provider)
        breakdown = estimate_cost(provider_id, model, input_tokens, output_tokens, images, cost_override)
        with self._lock:
            now = self._clock()
            record = UsageRecord(
                timestamp=now,
                provider=provider_id,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                image_cost=breakdown.image_cost,
                total_cost=breakdown.total_cost,
                metadata=dict(metadata or {}),
            )
            self._session_total += breakdown.total_cost
            self._roll_over_if_needed(now)
            self._daily_totals[provider_id] = self._daily_totals.get(provider_id, 0.0) + breakdown.total_cost
            self._usage_log.append(record)

        obs_metrics.record_llm_tokens(
            model=model,
            provider=provider_id.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        obs_metrics.record_llm_cost(model=model, provider=provider_id.value, cost_usd=breakdown.total_cost)
        logger.debug(
            "usage_recorded",
            provider=provider_id.value,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=round(breakdown.total_cost, 6),
            override=cost_override is not None,
        )
        return record

    def get_session_cost(self) -> float:
        with self._lock:
            return round(self._session_total, 4)

    def get_daily_cost(self, provider: Optional[ProviderId | str] = None) -> float:
        """Today's spend for one provider, or across all providers when omitted."""
        with self._lock:
            self._roll_over_if_needed(self._clock())
            if provider is not None:
                return round(self._daily_totals.get(ProviderId(provider), 0.0), 4)
            return round(sum(self._daily_totals.values()), 4)

    def summarize_by_provider(self) -> dict[ProviderId, ProviderSpend]:
        """Call count and spend per provider, derived from the usage log."""
        with self._lock:
            log = list(self._usage_log)
        totals: dict[ProviderId, list[float]] = {}
        for record in log:
            bucket = totals.setdefault(record.provider, [0, 0.0])
            bucket[0] += 1
            bucket[1] += record.total_cost
        return {
            provider: ProviderSpend(calls=int(calls), spend=round(spend, 4))
            for provider, (calls, spend) in totals.items()
        }

    def get_usage_log(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._usage_log)

    def reset_session(self) -> None:
        """Reset session total and usage log. Daily totals are left untouched."""
        with self._lock:
            self._session_total = 0.0
            self._usage_log = []
