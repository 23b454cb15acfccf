"""Provider adapters: text through LangChain chat models, images through httpx."""

from __future__ import annotations

from typing import Optional

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
    classify_exception,
    classify_status,
)
from model_orchestrator.adapters.images import build_image_adapters
from model_orchestrator.adapters.text import build_text_adapters
from model_orchestrator.config import Settings, get_settings


def build_default_registry(settings: Optional[Settings] = None) -> AdapterRegistry:
    """Register one adapter per (provider, modality) the catalog uses."""
    settings = settings or get_settings()
    registry = AdapterRegistry()
    for adapter in build_text_adapters(settings.credentials, settings.generation):
        registry.register(adapter)
    for adapter in build_image_adapters(settings.credentials, timeout=settings.generation.request_timeout):
        registry.register(adapter)
    return registry


__all__ = [
    "AdapterFailure",
    "AdapterRegistry",
    "AdapterResult",
    "AdapterSuccess",
    "ErrorKind",
    "GeneratedImage",
    "GenerationRequest",
    "ImageRequest",
    "ProviderAdapter",
    "build_default_registry",
    "classify_exception",
    "classify_status",
]
