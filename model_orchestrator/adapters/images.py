"""
Image adapters over plain HTTP (httpx).

Each adapter posts one generation request and normalizes the reply to a list
of GeneratedImage (base64 payload + mime type). Providers that only return a
URL are fetched so callers always get inline data. HTTP errors are raised as
httpx.HTTPStatusError and classified by ProviderAdapter.call().
"""

from __future__ import annotations

import base64
from typing import Any, Optional, Union

import httpx
import structlog

from model_orchestrator.adapters.base import (
    AdapterResult,
    AdapterSuccess,
    GeneratedImage,
    GenerationRequest,
    ImageRequest,
    MalformedResponseError,
    ProviderAdapter,
)
from model_orchestrator.catalog import Modality, ProviderId, ProviderProfile
from model_orchestrator.config import ProviderCredentials

logger = structlog.get_logger()

RUNWARE_URL = "https://api.runware.ai/v1/runs"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
HUGGINGFACE_URL = "https://router.huggingface.co/models/{model}"
DASHSCOPE_TEXT2IMAGE_URL = (
    "https://dashscope.aliyuncs.com/api/v1/services/aigc/image-generation/text2image"
)

# Only the Pro image model accepts an explicit 2K/4K size.
_GEMINI_SIZED_MODELS = ("gemini-3-pro-image-preview",)


class HttpImageAdapter(ProviderAdapter):
    """Shared httpx plumbing for image providers."""

    modality = Modality.IMAGE

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    @property
    def api_key(self) -> str:
        return self._credentials.for_provider(self.provider.value)

    def _bearer(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def _post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self.provider.value} returned non-JSON body") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{self.provider.value} returned unexpected payload")
        return data

    async def _inline_url(self, url: str) -> GeneratedImage:
        """Download an image URL and return it as base64."""
        client = await self._get_client()
        resp = await client.get(url)
        resp.raise_for_status()
        return GeneratedImage(
            base64_data=base64.b64encode(resp.content).decode("ascii"),
            url=url,
            mime_type=resp.headers.get("content-type", "image/png").split(";")[0],
        )

    async def _normalize(self, entry: dict[str, Any], mime_key: str = "mime_type") -> GeneratedImage:
        data = entry.get("image_base64") or entry.get("base64") or entry.get("b64_json") or entry.get("data")
        url = entry.get("url") or entry.get("image_url")
        if data:
            return GeneratedImage(base64_data=data, url=url or "", mime_type=entry.get(mime_key) or "image/png")
        if url:
            return await self._inline_url(url)
        raise MalformedResponseError(f"{self.provider.value} response had no image data or url")

    @staticmethod
    def _require_image_request(request: Union[GenerationRequest, ImageRequest]) -> ImageRequest:
        if not isinstance(request, ImageRequest):
            raise TypeError(f"image adapter cannot serve {type(request).__name__}")
        return request


class RunwareImageAdapter(HttpImageAdapter):
    provider = ProviderId.RUNWARE

    async def _call(self, profile: ProviderProfile, request: Union[GenerationRequest, ImageRequest]) -> AdapterResult:
        req = self._require_image_request(request)
        payload = {
            "model": profile.model,
            "input": {
                "prompt": req.prompt,
                "num_images": 1,
                "width": req.width,
                "height": req.height,
            },
        }
        data = await self._post_json(RUNWARE_URL, payload, self._bearer())
        # The run payload nests images differently across API versions.
        images_raw = (
            (data.get("output") or {}).get("images")
            or ((data.get("data") or {}).get("output") or {}).get("images")
            or data.get("images")
            or (data.get("result") or {}).get("images")
            or []
        )
        if not isinstance(images_raw, list) or not images_raw:
            raise MalformedResponseError("runware response had no images")
        first = images_raw[0] if isinstance(images_raw[0], dict) else {"url": images_raw[0]}
        return AdapterSuccess(images=[await self._normalize(first)])


class GeminiImageAdapter(HttpImageAdapter):
    provider = ProviderId.GOOGLE

    async def _call(self, profile: ProviderProfile, request: Union[GenerationRequest, ImageRequest]) -> AdapterResult:
        req = self._require_image_request(request)
        image_config: dict[str, str] = {"aspectRatio": req.aspect_ratio}
        if profile.model in _GEMINI_SIZED_MODELS:
            image_config["imageSize"] = "2K" if req.height >= 1080 else "1K"
        payload = {
            "contents": [{"parts": [{"text": req.prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": image_config,
            },
        }
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        data = await self._post_json(GEMINI_URL.format(model=profile.model), payload, headers)

        images: list[GeneratedImage] = []
        text_parts: list[str] = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    images.append(
                        GeneratedImage(
                            base64_data=inline["data"],
                            mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                        )
                    )
                elif part.get("text"):
                    text_parts.append(part["text"])
        if not images:
            raise MalformedResponseError("gemini response had no inline image data")
        usage = data.get("usageMetadata") or {}
        return AdapterSuccess(
            text="".join(text_parts),
            images=images,
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )


class HuggingFaceImageAdapter(HttpImageAdapter):
    provider = ProviderId.HUGGINGFACE

    async def _call(self, profile: ProviderProfile, request: Union[GenerationRequest, ImageRequest]) -> AdapterResult:
        req = self._require_image_request(request)
        payload = {
            "inputs": req.prompt,
            "parameters": {
                "width": req.width,
                "height": req.height,
                "guidance_scale": 4.5,
                "num_inference_steps": 28,
            },
        }
        client = await self._get_client()
        resp = await client.post(HUGGINGFACE_URL.format(model=profile.model), json=payload, headers=self._bearer())
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "")
        if "application/json" in content_type:
            # JSON on a 2xx means an error envelope, never image bytes.
            try:
                error = resp.json().get("error")
            except (ValueError, AttributeError):
                error = None
            raise MalformedResponseError(error or "huggingface returned JSON payload without image data")
        if not resp.content:
            raise MalformedResponseError("huggingface returned an empty body")
        return AdapterSuccess(
            images=[
                GeneratedImage(
                    base64_data=base64.b64encode(resp.content).decode("ascii"),
                    mime_type=content_type.split(";")[0] or "image/png",
                )
            ]
        )


class QwenImageAdapter(HttpImageAdapter):
    provider = ProviderId.QWEN

    async def _call(self, profile: ProviderProfile, request: Union[GenerationRequest, ImageRequest]) -> AdapterResult:
        req = self._require_image_request(request)
        payload = {
            "model": profile.model,
            "input": {"prompt": req.prompt},
            "parameters": {"size": f"{req.width}*{req.height}", "n": 1},
        }
        data = await self._post_json(DASHSCOPE_TEXT2IMAGE_URL, payload, self._bearer())
        results = (data.get("output") or {}).get("results") or []
        if not results:
            raise MalformedResponseError("qwen-image response had no results")
        return AdapterSuccess(images=[await self._normalize(results[0])])


def build_image_adapters(
    credentials: ProviderCredentials,
    timeout: float = 120.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[HttpImageAdapter]:
    return [
        cls(credentials, timeout=timeout, transport=transport)
        for cls in (RunwareImageAdapter, GeminiImageAdapter, HuggingFaceImageAdapter, QwenImageAdapter)
    ]
