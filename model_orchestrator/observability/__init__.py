"""Observability: Prometheus metrics for provider calls, cascades, costs and output repair."""

from model_orchestrator.observability.metrics import metrics

__all__ = ["metrics"]
