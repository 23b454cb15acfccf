"""
Provider/model catalog: every callable model, its pricing and capabilities.

Pure static data. Pricing is USD per 1M tokens (and per generated image for
image models). A model without a pricing entry is "cost unknown": callers
treat it as zero cost and never block a generation on it, because providers
ship new models faster than this table is updated.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProviderId(str, Enum):
    """External vendors exposing callable models."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GROQ = "groq"
    MISTRAL = "mistral"
    DEEPSEEK = "deepseek"
    QWEN = "qwen"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    RUNWARE = "runware"
    HUGGINGFACE = "huggingface"


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class CostTier(str, Enum):
    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PREMIUM = "premium"


class SpeedTier(str, Enum):
    SLOW = "slow"
    MEDIUM = "medium"
    FAST = "fast"
    INSTANT = "instant"


class Pricing(BaseModel):
    """USD per 1M tokens; optional per-image prices by resolution tier."""

    model_config = ConfigDict(frozen=True)

    input_per_1m: float = 0.0
    output_per_1m: float = 0.0
    image_per_1k: Optional[float] = None
    image_per_4k: Optional[float] = None


class Capabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_output_tokens: int = 8000
    context_window: int = 128000
    supports_images: bool = False
    supports_streaming: bool = True


class ProviderProfile(BaseModel):
    """Identity of one callable model. Immutable for the life of the process."""

    model_config = ConfigDict(frozen=True)

    key: str
    provider: ProviderId
    model: str
    modality: Modality = Modality.TEXT
    description: str = ""
    pricing: Optional[Pricing] = None
    capabilities: Capabilities = Capabilities()
    cost_tier: CostTier = CostTier.MEDIUM
    speed_tier: SpeedTier = SpeedTier.MEDIUM
    default_temperature: float = 0.7


def _text(
    key: str,
    provider: ProviderId,
    model: str,
    description: str,
    pricing: Optional[Pricing],
    cost_tier: CostTier,
    speed_tier: SpeedTier,
    context_window: int = 128000,
    max_output_tokens: int = 8000,
    temperature: float = 0.7,
) -> ProviderProfile:
    return ProviderProfile(
        key=key,
        provider=provider,
        model=model,
        description=description,
        pricing=pricing,
        capabilities=Capabilities(
            max_output_tokens=max_output_tokens,
            context_window=context_window,
        ),
        cost_tier=cost_tier,
        speed_tier=speed_tier,
        default_temperature=temperature,
    )


def _image(
    key: str,
    provider: ProviderId,
    model: str,
    description: str,
    pricing: Optional[Pricing],
    cost_tier: CostTier,
    speed_tier: SpeedTier,
) -> ProviderProfile:
    return ProviderProfile(
        key=key,
        provider=provider,
        model=model,
        modality=Modality.IMAGE,
        description=description,
        pricing=pricing,
        capabilities=Capabilities(
            max_output_tokens=0,
            context_window=0,
            supports_images=True,
            supports_streaming=False,
        ),
        cost_tier=cost_tier,
        speed_tier=speed_tier,
    )


_P = ProviderId

MODELS: dict[str, ProviderProfile] = {
    p.key: p
    for p in (
        # ── Local (Ollama) ──
        _text("deepseek_r1_70b", _P.OLLAMA, "deepseek-r1:70b",
              "DeepSeek R1 70B: step-by-step reasoning, exercise design",
              Pricing(), CostTier.FREE, SpeedTier.SLOW, context_window=65536, temperature=0.3),
        _text("qwen3_30b", _P.OLLAMA, "qwen3:30b",
              "Qwen3 30B: long-form prose, 100+ languages",
              Pricing(), CostTier.FREE, SpeedTier.MEDIUM, context_window=40960),
        _text("qwen2_5_14b", _P.OLLAMA, "qwen2.5:14b",
              "Qwen2.5 14B: faster local fallback",
              Pricing(), CostTier.FREE, SpeedTier.FAST, context_window=131072, max_output_tokens=4000),
        _text("llama3_1_8b", _P.OLLAMA, "llama3.1:8b",
              "Llama 3.1 8B: lightweight local fallback",
              Pricing(), CostTier.FREE, SpeedTier.FAST, context_window=131072, max_output_tokens=4000),
        # ── Groq ──
        _text("groq_llama70b", _P.GROQ, "llama-3.3-70b-versatile",
              "Groq Llama 3.3 70B: ultra fast cloud inference",
              Pricing(), CostTier.FREE, SpeedTier.INSTANT, context_window=131072),
        _text("groq_llama8b", _P.GROQ, "llama-3.1-8b-instant",
              "Groq Llama 3.1 8B: instant classification",
              Pricing(), CostTier.FREE, SpeedTier.INSTANT, context_window=131072),
        # ── Google ──
        _text("gemini_pro", _P.GOOGLE, "gemini-3-pro",
              "Gemini 3 Pro: most intelligent Gemini, multimodal",
              Pricing(input_per_1m=0.50, output_per_1m=1.50), CostTier.HIGH, SpeedTier.MEDIUM,
              context_window=2000000),
        _text("gemini_2_5_pro", _P.GOOGLE, "gemini-2.5-pro",
              "Gemini 2.5 Pro",
              Pricing(input_per_1m=0.30, output_per_1m=1.20), CostTier.MEDIUM, SpeedTier.MEDIUM,
              context_window=1000000),
        _text("gemini_flash", _P.GOOGLE, "gemini-2.5-flash",
              "Gemini 2.5 Flash: best price-performance",
              Pricing(input_per_1m=0.075, output_per_1m=0.30), CostTier.LOW, SpeedTier.FAST,
              context_window=1000000),
        # ── Anthropic ──
        _text("claude_opus", _P.ANTHROPIC, "claude-opus-4-5-20251101",
              "Claude Opus 4.5: premium synthesis",
              Pricing(input_per_1m=3.75, output_per_1m=18.75), CostTier.PREMIUM, SpeedTier.MEDIUM,
              context_window=200000),
        _text("claude_sonnet", _P.ANTHROPIC, "claude-sonnet-4-5-20250929",
              "Claude Sonnet 4.5: agents, coding, long-form writing",
              Pricing(input_per_1m=3.00, output_per_1m=15.00), CostTier.HIGH, SpeedTier.MEDIUM,
              context_window=200000),
        _text("claude_haiku", _P.ANTHROPIC, "claude-haiku-4-5-20251001",
              "Claude Haiku 4.5: fastest near-frontier",
              Pricing(input_per_1m=0.80, output_per_1m=4.00), CostTier.LOW, SpeedTier.FAST,
              context_window=200000),
        # ── OpenAI ──
        _text("gpt5_pro", _P.OPENAI, "gpt-5-pro",
              "GPT-5 Pro: maximum quality",
              Pricing(input_per_1m=2.40, output_per_1m=12.00), CostTier.PREMIUM, SpeedTier.SLOW),
        _text("gpt5", _P.OPENAI, "gpt-5.1",
              "GPT-5.1: coding and agentic tasks",
              Pricing(input_per_1m=1.25, output_per_1m=10.00), CostTier.HIGH, SpeedTier.MEDIUM),
        _text("gpt5_mini", _P.OPENAI, "gpt-5-mini",
              "GPT-5 Mini",
              Pricing(input_per_1m=0.60, output_per_1m=2.40), CostTier.LOW, SpeedTier.FAST),
        _text("gpt5_nano", _P.OPENAI, "gpt-5-nano",
              "GPT-5 Nano: fastest, cheapest OpenAI model",
              Pricing(input_per_1m=0.18, output_per_1m=0.72), CostTier.LOW, SpeedTier.INSTANT,
              max_output_tokens=4000),
        _text("o3", _P.OPENAI, "o3",
              "o3: deep reasoning",
              Pricing(input_per_1m=2.50, output_per_1m=12.00), CostTier.HIGH, SpeedTier.SLOW),
        # gpt-4o family is only referenced by the cost-balanced profile; no pricing entry yet.
        _text("gpt4o", _P.OPENAI, "gpt-4o",
              "GPT-4o: high-quality writing and reasoning (cost-balanced profile)",
              None, CostTier.MEDIUM, SpeedTier.MEDIUM),
        _text("gpt4o_mini", _P.OPENAI, "gpt-4o-mini",
              "GPT-4o-mini: fast, cost-efficient (cost-balanced profile)",
              None, CostTier.LOW, SpeedTier.FAST),
        # ── Mistral ──
        _text("mistral_medium", _P.MISTRAL, "mistral-medium-2508",
              "Mistral Medium 3.1",
              Pricing(input_per_1m=0.70, output_per_1m=2.10), CostTier.MEDIUM, SpeedTier.FAST),
        _text("mistral_small", _P.MISTRAL, "mistral-small-2506",
              "Mistral Small 3.2",
              Pricing(input_per_1m=0.30, output_per_1m=1.10), CostTier.LOW, SpeedTier.FAST),
        _text("codestral", _P.MISTRAL, "codestral-latest",
              "Codestral: code generation",
              Pricing(input_per_1m=0.40, output_per_1m=1.60), CostTier.LOW, SpeedTier.FAST),
        # ── DeepSeek ──
        _text("deepseek_reasoner", _P.DEEPSEEK, "deepseek-reasoner",
              "DeepSeek Reasoner (R1): cloud reasoning",
              Pricing(input_per_1m=0.42, output_per_1m=1.68), CostTier.LOW, SpeedTier.SLOW,
              temperature=0.3),
        _text("deepseek_chat", _P.DEEPSEEK, "deepseek-chat",
              "DeepSeek Chat (V3)",
              Pricing(input_per_1m=0.28, output_per_1m=0.56), CostTier.LOW, SpeedTier.FAST),
        # ── Qwen (DashScope) ──
        _text("qwen_plus", _P.QWEN, "qwen-plus",
              "Qwen Plus: multilingual prose via DashScope",
              None, CostTier.LOW, SpeedTier.FAST, context_window=131072),
        # ── OpenRouter ──
        _text("openrouter_llama70b", _P.OPENROUTER, "meta-llama/llama-3.3-70b-instruct:free",
              "OpenRouter Llama 3.3 70B: free tier",
              Pricing(), CostTier.FREE, SpeedTier.MEDIUM, context_window=131072),
        # ── Image models ──
        _image("gemini_pro_image", _P.GOOGLE, "gemini-3-pro-image-preview",
               "Gemini 3 Pro Image: precise diagrams and text rendering",
               Pricing(image_per_1k=0.134, image_per_4k=0.240), CostTier.HIGH, SpeedTier.MEDIUM),
        _image("gemini_flash_image", _P.GOOGLE, "gemini-2.5-flash-image",
               "Gemini 2.5 Flash Image",
               Pricing(image_per_1k=0.080, image_per_4k=0.140), CostTier.MEDIUM, SpeedTier.FAST),
        _image("runware_gen", _P.RUNWARE, "runware:97@1",
               "Runware: cheap default illustrations",
               None, CostTier.LOW, SpeedTier.FAST),
        _image("qwen_image", _P.QWEN, "qwen-image",
               "Qwen-Image text-to-image (DashScope)",
               None, CostTier.LOW, SpeedTier.MEDIUM),
        _image("flux_dev", _P.HUGGINGFACE, "black-forest-labs/FLUX.1-dev",
               "FLUX.1 dev via Hugging Face inference",
               None, CostTier.FREE, SpeedTier.SLOW),
    )
}


def get_profile(key: str) -> ProviderProfile:
    """Return the profile for a catalog key. Raises KeyError for unknown keys."""
    return MODELS[key]


def lookup_pricing(provider: ProviderId | str, model: str) -> Optional[Pricing]:
    """Pricing for a provider/model pair, or None when the cost is unknown."""
    provider_id = ProviderId(provider)
    for profile in MODELS.values():
        if profile.provider == provider_id and profile.model == model:
            return profile.pricing
    return None


def list_models_for_provider(provider: ProviderId | str) -> list[ProviderProfile]:
    """All catalog entries served by a provider, in catalog order."""
    provider_id = ProviderId(provider)
    return [p for p in MODELS.values() if p.provider == provider_id]
