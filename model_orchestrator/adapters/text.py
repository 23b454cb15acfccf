"""
Text adapters over LangChain chat models.

OpenAI, Anthropic and Google use their native LangChain integrations. Groq,
Mistral, DeepSeek, Qwen (DashScope compatible mode), OpenRouter and a local
Ollama server all speak the OpenAI chat protocol, so they go through
ChatOpenAI with a provider base URL.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Optional, Union

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from model_orchestrator.adapters.base import (
    AdapterResult,
    AdapterSuccess,
    GenerationRequest,
    ImageRequest,
    MalformedResponseError,
    ProviderAdapter,
)
from model_orchestrator.catalog import Modality, ProviderId, ProviderProfile
from model_orchestrator.config import GenerationConfig, ProviderCredentials

logger = structlog.get_logger()

ModelFactory = Callable[[ProviderProfile, Optional[float], int], BaseChatModel]

OPENAI_COMPATIBLE = (
    ProviderId.GROQ,
    ProviderId.MISTRAL,
    ProviderId.DEEPSEEK,
    ProviderId.QWEN,
    ProviderId.OPENROUTER,
    ProviderId.OLLAMA,
)

# Reasoning models reject a custom temperature.
_REASONING_MODEL_PATTERNS = ("gpt-5", "o1", "o3", "o4")


def _is_reasoning_model(model: str) -> bool:
    name = model.lower()
    return any(name.startswith(pat) for pat in _REASONING_MODEL_PATTERNS)


def _content_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _token_counts(response: Any, prompt_text: str, output_text: str) -> tuple[int, int]:
    """Provider-reported usage when present, else a chars/4 estimate."""
    usage = getattr(response, "usage_metadata", None) or {}
    input_tokens = usage.get("input_tokens") if isinstance(usage, dict) else None
    output_tokens = usage.get("output_tokens") if isinstance(usage, dict) else None
    if not input_tokens:
        input_tokens = len(prompt_text) // 4
    if not output_tokens:
        output_tokens = len(output_text) // 4
    return int(input_tokens), int(output_tokens)


class ChatModelAdapter(ProviderAdapter):
    """Text generation through a LangChain BaseChatModel."""

    modality = Modality.TEXT
    # Clients are keyed by (model, temperature, max_tokens); least recently used goes first.
    max_cached_models = 32

    def __init__(
        self,
        provider: ProviderId,
        credentials: ProviderCredentials,
        generation: GenerationConfig,
        model_factory: Optional[ModelFactory] = None,
    ) -> None:
        self.provider = provider
        self._credentials = credentials
        self._generation = generation
        self._factory = model_factory or self._build_model
        self._models: OrderedDict[tuple[str, Optional[float], int], BaseChatModel] = OrderedDict()

    def _build_model(self, profile: ProviderProfile, temperature: Optional[float], max_tokens: int) -> BaseChatModel:
        api_key = self._credentials.for_provider(self.provider.value)
        timeout = self._generation.request_timeout
        if self.provider == ProviderId.ANTHROPIC:
            return ChatAnthropic(
                model=profile.model,
                api_key=api_key,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )
        if self.provider == ProviderId.GOOGLE:
            return ChatGoogleGenerativeAI(
                model=profile.model,
                google_api_key=api_key,
                temperature=temperature,
                max_output_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )
        if self.provider == ProviderId.OLLAMA:
            # Ollama's OpenAI-compatible endpoint ignores the key but the client requires one.
            return ChatOpenAI(
                base_url=api_key.rstrip("/") + "/v1",
                api_key="ollama",
                model=profile.model,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )
        base_url = self._generation.openai_compatible_base_urls.get(self.provider.value)
        return ChatOpenAI(
            base_url=base_url,
            api_key=api_key,
            model=profile.model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
        )

    def _model_for(self, profile: ProviderProfile, request: GenerationRequest) -> BaseChatModel:
        temperature: Optional[float] = request.temperature
        if temperature is None:
            temperature = profile.default_temperature
        if _is_reasoning_model(profile.model):
            temperature = None
        max_tokens = min(
            request.max_tokens or self._generation.max_tokens,
            profile.capabilities.max_output_tokens,
        )
        cache_key = (profile.model, temperature, max_tokens)
        model = self._models.get(cache_key)
        if model is not None:
            self._models.move_to_end(cache_key)
            return model
        model = self._factory(profile, temperature, max_tokens)
        self._models[cache_key] = model
        while len(self._models) > self.max_cached_models:
            self._models.popitem(last=False)
        return model

    async def _call(
        self,
        profile: ProviderProfile,
        request: Union[GenerationRequest, ImageRequest],
    ) -> AdapterResult:
        if not isinstance(request, GenerationRequest):
            raise TypeError(f"{self.provider.value} text adapter cannot serve {type(request).__name__}")
        messages: list[BaseMessage] = []
        if request.system_prompt:
            messages.append(SystemMessage(content=request.system_prompt))
        messages.append(HumanMessage(content=request.prompt))

        model = self._model_for(profile, request)
        response = await model.ainvoke(messages)
        text = _content_text(getattr(response, "content", response))
        if not text.strip():
            raise MalformedResponseError(f"{self.provider.value}/{profile.model} returned empty content")

        input_tokens, output_tokens = _token_counts(
            response, (request.system_prompt or "") + request.prompt, text
        )
        return AdapterSuccess(text=text, input_tokens=input_tokens, output_tokens=output_tokens)


def build_text_adapters(
    credentials: ProviderCredentials,
    generation: GenerationConfig,
) -> list[ChatModelAdapter]:
    """One chat adapter per text provider."""
    providers = (ProviderId.OPENAI, ProviderId.ANTHROPIC, ProviderId.GOOGLE, *OPENAI_COMPATIBLE)
    return [ChatModelAdapter(p, credentials, generation) for p in providers]
