"""
Prometheus metrics for the model orchestrator.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_provider_call, record_llm_tokens/cost, record_fallback,
record_rate_limit_retry, record_cascade_exhausted, record_output_repair,
set_provider_availability and start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

import structlog
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    start_http_server as prometheus_start_http_server,
)

logger = structlog.get_logger()


def _enabled() -> bool:
    from model_orchestrator.config import get_settings

    return bool(get_settings().observability.metrics_enabled)


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    _create_metrics()
    _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    # Provider calls
    _call_duration = Histogram(
        "provider_call_duration_seconds",
        "Provider call latency",
        ["provider", "model", "task"],
        buckets=[0.5, 1, 2, 5, 10, 30, 60],
    )
    _call_outcomes = Counter(
        "provider_call_total",
        "Provider call outcomes",
        ["provider", "model", "task", "outcome"],
    )
    _tokens = Counter(
        "provider_tokens_total",
        "Tokens consumed",
        ["provider", "model", "direction"],
    )
    _cost = Counter(
        "provider_cost_usd_total",
        "Spend in USD",
        ["provider", "model"],
    )

    # Cascade
    _fallback = Counter(
        "cascade_fallback_total",
        "Advance from one candidate to the next",
        ["from_provider", "to_provider", "task"],
    )
    _rate_limit_retry = Counter(
        "rate_limit_retry_total",
        "Same-candidate retries after a rate limit",
        ["provider", "model"],
    )
    _cascade_exhausted = Counter(
        "cascade_exhausted_total",
        "Cascades where every candidate failed",
        ["task"],
    )

    # Availability
    _provider_available = Gauge(
        "provider_available",
        "1 when the provider has credentials configured",
        ["provider"],
    )

    # Output repair
    _output_repair = Counter(
        "output_repair_total",
        "Structured output parse outcomes",
        ["outcome"],
    )

    _registry = {
        "call_duration": _call_duration,
        "call_outcomes": _call_outcomes,
        "tokens": _tokens,
        "cost": _cost,
        "fallback": _fallback,
        "rate_limit_retry": _rate_limit_retry,
        "cascade_exhausted": _cascade_exhausted,
        "provider_available": _provider_available,
        "output_repair": _output_repair,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- Provider calls ---
    @contextlib.asynccontextmanager
    async def track_provider_call(self, provider: str = "", model: str = "", task: str = ""):
        """Time one adapter call. The yielded dict's "outcome" key labels the result."""
        h = self._get("call_duration")
        c = self._get("call_outcomes")
        start = time.perf_counter()
        state = {"outcome": "success"}
        try:
            yield state
        except BaseException as e:
            state["outcome"] = type(e).__name__
            raise
        finally:
            labels = {
                "provider": provider or "unknown",
                "model": model or "unknown",
                "task": task or "unknown",
            }
            if h:
                h.labels(**labels).observe(time.perf_counter() - start)
            if c:
                c.labels(outcome=state["outcome"][:32], **labels).inc()

    def record_llm_tokens(
        self,
        model: str = "",
        provider: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        t = self._get("tokens")
        if t:
            t.labels(provider=provider or "unknown", model=model or "unknown", direction="input").inc(input_tokens)
            t.labels(provider=provider or "unknown", model=model or "unknown", direction="output").inc(output_tokens)

    def record_llm_cost(self, model: str = "", provider: str = "", cost_usd: float = 0.0) -> None:
        c = self._get("cost")
        if c and cost_usd > 0:
            c.labels(provider=provider or "unknown", model=model or "unknown").inc(cost_usd)

    # --- Cascade ---
    def record_fallback(self, from_provider: str, to_provider: str, task: str = "") -> None:
        c = self._get("fallback")
        if c:
            c.labels(
                from_provider=from_provider or "unknown",
                to_provider=to_provider or "unknown",
                task=task or "unknown",
            ).inc()

    def record_rate_limit_retry(self, provider: str = "", model: str = "") -> None:
        c = self._get("rate_limit_retry")
        if c:
            c.labels(provider=provider or "unknown", model=model or "unknown").inc()

    def record_cascade_exhausted(self, task: str = "") -> None:
        c = self._get("cascade_exhausted")
        if c:
            c.labels(task=task or "unknown").inc()

    # --- Availability ---
    def set_provider_availability(self, providers: dict[str, bool]) -> None:
        g = self._get("provider_available")
        if g:
            for provider, ok in (providers or {}).items():
                g.labels(provider=provider).set(1 if ok else 0)

    # --- Output repair ---
    def record_output_repair(self, outcome: str) -> None:
        """outcome: clean / repaired / failed."""
        c = self._get("output_repair")
        if c:
            c.labels(outcome=outcome or "unknown").inc()

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError as e:
                logger.warning("metrics_server_failed", port=port, error=str(e))

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()


# Module-level shortcuts so callers can `from ... import metrics as obs_metrics`
track_provider_call = metrics.track_provider_call
record_llm_tokens = metrics.record_llm_tokens
record_llm_cost = metrics.record_llm_cost
record_fallback = metrics.record_fallback
record_rate_limit_retry = metrics.record_rate_limit_retry
record_cascade_exhausted = metrics.record_cascade_exhausted
set_provider_availability = metrics.set_provider_availability
record_output_repair = metrics.record_output_repair
start_server = metrics.start_server
