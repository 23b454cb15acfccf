"""
Adapter contract shared by every provider.

An adapter translates a provider-agnostic request into one provider's wire
format and back. It never raises for provider-side problems: call() returns
either an AdapterSuccess or an AdapterFailure tagged with an ErrorKind, so the
engine branches on the tag instead of sniffing exception messages.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from model_orchestrator.catalog import Modality, ProviderId, ProviderProfile
from model_orchestrator.rate_limit import is_rate_limited, parse_retry_after

logger = structlog.get_logger()


# ── Requests ──


class GenerationRequest(BaseModel):
    """Text generation request, independent of any provider."""

    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class ImageRequest(BaseModel):
    """Rendered image prompt plus target dimensions."""

    prompt: str
    width: int = 1024
    height: int = 1024
    aspect_ratio: str = "1:1"
    resolution: str = "1k"


class GeneratedImage(BaseModel):
    base64_data: str = ""
    url: str = ""
    mime_type: str = "image/png"


# ── Tagged results ──


class ErrorKind(str, Enum):
    """Classified adapter failure. Only RATE_LIMIT is retried on the same candidate."""

    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    AUTH = "auth"
    MALFORMED = "malformed"
    INVALID_REQUEST = "invalid_request"


class AdapterSuccess(BaseModel):
    ok: bool = True
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    images: list[GeneratedImage] = Field(default_factory=list)


class AdapterFailure(BaseModel):
    ok: bool = False
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMIT


AdapterResult = Union[AdapterSuccess, AdapterFailure]


class MalformedResponseError(Exception):
    """Provider answered 2xx but the payload had no usable content."""

    pass


# ── Classification ──


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status to an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code in (400, 404, 413, 422):
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.TRANSIENT


def classify_exception(exc: BaseException) -> AdapterFailure:
    """Turn an exception raised inside an adapter into a tagged failure."""
    message = str(exc) or type(exc).__name__
    status: Optional[int] = None
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    else:
        for attr in ("status_code", "status"):
            val = getattr(exc, attr, None)
            if isinstance(val, int):
                status = val
                break

    if is_rate_limited(exc):
        kind = ErrorKind.RATE_LIMIT
    elif isinstance(exc, MalformedResponseError):
        kind = ErrorKind.MALFORMED
    elif isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        kind = ErrorKind.TRANSIENT
    elif status is not None:
        kind = classify_status(status)
    else:
        msg = message.lower()
        if "api key" in msg or "unauthorized" in msg or "authentication" in msg or "permission" in msg:
            kind = ErrorKind.AUTH
        elif "invalid" in msg or "bad request" in msg:
            kind = ErrorKind.INVALID_REQUEST
        else:
            kind = ErrorKind.TRANSIENT

    return AdapterFailure(
        kind=kind,
        message=message[:500],
        status_code=status,
        retry_after=parse_retry_after(exc) if kind is ErrorKind.RATE_LIMIT else None,
    )


# ── Adapter base ──


class ProviderAdapter(ABC):
    """One provider × modality. Subclasses implement _call()."""

    provider: ProviderId
    modality: Modality = Modality.TEXT

    async def call(
        self,
        profile: ProviderProfile,
        request: Union[GenerationRequest, ImageRequest],
    ) -> AdapterResult:
        """Invoke the provider; any exception becomes a classified AdapterFailure."""
        try:
            return await self._call(profile, request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = classify_exception(e)
            logger.debug(
                "adapter_call_failed",
                provider=self.provider.value,
                model=profile.model,
                kind=failure.kind.value,
                status=failure.status_code,
                error=failure.message[:200],
            )
            return failure

    @abstractmethod
    async def _call(
        self,
        profile: ProviderProfile,
        request: Union[GenerationRequest, ImageRequest],
    ) -> AdapterResult:
        ...

    async def aclose(self) -> None:
        """Release pooled connections, if any."""
        return None


class AdapterRegistry:
    """Adapters keyed by (provider, modality)."""

    def __init__(self) -> None:
        self._adapters: dict[tuple[ProviderId, Modality], ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[(adapter.provider, adapter.modality)] = adapter

    def get(self, provider: ProviderId, modality: Modality) -> Optional[ProviderAdapter]:
        return self._adapters.get((provider, modality))

    def for_profile(self, profile: ProviderProfile) -> Optional[ProviderAdapter]:
        return self.get(profile.provider, profile.modality)

    def __contains__(self, key: tuple[ProviderId, Modality]) -> bool:
        return key in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
