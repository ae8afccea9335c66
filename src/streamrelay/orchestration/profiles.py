"""Model capability profiles and vendor request parameters.

A :class:`ModelProfile` captures everything the orchestrator needs to know
about a target model: which message shapes it accepts, how its reasoning
channel is controlled and which search-result shape it returns.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Sequence

from .types import RequestMessage, SearchSource

__all__ = [
    "ReasoningFamily",
    "ReasoningEffort",
    "EFFORT_RATIO",
    "DEFAULT_MAX_TOKENS",
    "ModelProfile",
    "GenerationSettings",
    "resolve_profile",
    "search_source_for",
    "reasoning_controls",
    "build_request_params",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_CONTEXT_COUNT = 5

ReasoningFamily = Literal["none", "openai", "grok", "qwen", "claude", "generic"]
ReasoningEffort = Literal["low", "medium", "high"]

EFFORT_RATIO: Mapping[str, float] = {"low": 0.2, "medium": 0.5, "high": 0.8}

# Providers whose endpoints reject array-valued message content.
_NO_ARRAY_CONTENT_PROVIDERS = frozenset({"deepseek", "baichuan", "minimax", "xirang"})
# Providers that ignore reasoning-control parameters entirely.
_NO_REASONING_CONTROL_PROVIDERS = frozenset({"groq"})
_STRICT_ALTERNATION_MODELS = frozenset({"deepseek-reasoner"})

_OPENAI_REASONING_RE = re.compile(r"^(o1|o3|o4)(?![\w-]*(?:mini-2024|preview))", re.IGNORECASE)
_VISION_RE = re.compile(
    r"(gpt-4o|gpt-4\.1|gpt-4-turbo|gpt-4-vision|o1(?!-mini)|o3|o4|claude-3|claude-(sonnet|opus)-4|"
    r"gemini|vision|-vl|qvq|pixtral|llava|glm-4v|grok-2-vision)",
    re.IGNORECASE,
)
_REASONING_RE = re.compile(
    r"(^o1|^o3|^o4|deepseek-r1|deepseek-reasoner|qwq|qwen3|claude-3[.-]7|claude-(sonnet|opus)-4|"
    r"grok-3-mini|glm-zero|reasoner|thinking)",
    re.IGNORECASE,
)
# Rough thinking-token ceilings per reasoning family, used with EFFORT_RATIO.
_THINKING_TOKEN_LIMITS: Mapping[str, int] = {
    "qwen": 38_912,
    "claude": 64_000,
    "generic": 32_768,
}
_PROVIDER_SEARCH_SOURCES: Mapping[str, SearchSource] = {
    "openai": SearchSource.OPENAI,
    "openrouter": SearchSource.OPENROUTER,
    "perplexity": SearchSource.PERPLEXITY,
    "zhipu": SearchSource.ZHIPU,
    "hunyuan": SearchSource.HUNYUAN,
    "gemini": SearchSource.GEMINI,
}


@dataclass(slots=True, frozen=True)
class ModelProfile:
    """Capability flags for one model served by one provider.

    Attributes:
        model_id: Identifier sent upstream.
        provider: Provider identifier (``openai``, ``deepseek``, ...).
        vision: Whether image parts are accepted.
        array_content: Whether structured (list) message content is accepted.
        strict_alternation: Whether user/assistant roles must alternate.
        developer_role: Whether system prompts use ``developer`` framing.
        reasoning: Whether the model produces a reasoning channel.
        reasoning_family: Which reasoning-control object the model takes.
        search_source: Shape of search results the vendor attaches to chunks.
        thinking_token_limit: Upper bound used to derive thinking budgets.
    """

    model_id: str
    provider: str = "openai"
    vision: bool = False
    array_content: bool = True
    strict_alternation: bool = False
    developer_role: bool = False
    reasoning: bool = False
    reasoning_family: ReasoningFamily = "none"
    search_source: SearchSource | None = None
    thinking_token_limit: int | None = None

    def with_updates(self, **kwargs: Any) -> ModelProfile:
        return replace(self, **kwargs)

    @property
    def is_openai_reasoning(self) -> bool:
        return self.reasoning_family == "openai"


@dataclass(slots=True, frozen=True)
class GenerationSettings:
    """Sampling and loop configuration applied to every request.

    Attributes:
        temperature: Sampling temperature (dropped for reasoning models).
        top_p: Nucleus sampling value (dropped for reasoning models).
        max_tokens: Completion token ceiling.
        reasoning_effort: Requested reasoning effort, if any.
        stream: Whether to request a streaming response.
        context_count: Number of prior messages kept besides the latest.
        max_tool_rounds: Upper bound on completion rounds in the tool loop.
        custom_parameters: Extra vendor parameters merged into each request.
    """

    temperature: float | None = 1.0
    top_p: float | None = None
    max_tokens: int | None = DEFAULT_MAX_TOKENS
    reasoning_effort: ReasoningEffort | None = None
    stream: bool = True
    context_count: int = DEFAULT_CONTEXT_COUNT
    max_tool_rounds: int = 8
    custom_parameters: Mapping[str, Any] = field(default_factory=dict)

    def clamp(self) -> GenerationSettings:
        """Return a copy with values forced into safe operating ranges."""
        return replace(
            self,
            max_tool_rounds=max(1, min(int(self.max_tool_rounds or 1), 50)),
            context_count=max(0, int(self.context_count or 0)),
        )


def search_source_for(provider: str | None) -> SearchSource | None:
    """Search-result shape the provider attaches to completions, if any."""
    return _PROVIDER_SEARCH_SOURCES.get((provider or "").strip().lower())


def resolve_profile(
    model_id: str,
    provider: str = "openai",
    *,
    overrides: Mapping[str, Any] | None = None,
) -> ModelProfile:
    """Infer a capability profile from the model and provider identifiers."""
    normalized_id = (model_id or "").strip()
    provider_key = (provider or "openai").strip().lower()
    lowered = normalized_id.lower()

    family: ReasoningFamily = "none"
    if _OPENAI_REASONING_RE.match(lowered) and not lowered.startswith(("o1-mini", "o1-preview")):
        family = "openai"
    elif lowered.startswith("grok-3-mini"):
        family = "grok"
    elif lowered.startswith(("qwen3", "qwen-plus", "qwen-turbo")):
        family = "qwen"
    elif re.search(r"claude-3[.-]7|claude-(sonnet|opus)-4", lowered):
        family = "claude"
    elif _REASONING_RE.search(lowered):
        family = "generic"

    profile = ModelProfile(
        model_id=normalized_id,
        provider=provider_key,
        vision=bool(_VISION_RE.search(lowered)),
        array_content=provider_key not in _NO_ARRAY_CONTENT_PROVIDERS,
        strict_alternation=lowered in _STRICT_ALTERNATION_MODELS,
        developer_role=family == "openai",
        reasoning=family != "none" or bool(_REASONING_RE.search(lowered)),
        reasoning_family=family,
        search_source=search_source_for(provider_key),
        thinking_token_limit=_THINKING_TOKEN_LIMITS.get(family),
    )
    if overrides:
        allowed = {key: value for key, value in overrides.items() if key in ModelProfile.__dataclass_fields__}
        if isinstance(allowed.get("search_source"), str):
            allowed["search_source"] = SearchSource(allowed["search_source"].lower())
        if allowed:
            profile = replace(profile, **allowed)
    LOGGER.debug("Resolved profile for %s/%s: %s", provider_key, normalized_id, profile)
    return profile


def _thinking_budget(profile: ModelProfile, effort: str) -> int:
    ratio = EFFORT_RATIO.get(effort, 0.0)
    return int(math.floor((profile.thinking_token_limit or 0) * ratio))


def reasoning_controls(profile: ModelProfile, settings: GenerationSettings) -> dict[str, Any]:
    """Return the vendor-specific reasoning-control object for a request."""
    if profile.provider in _NO_REASONING_CONTROL_PROVIDERS or not profile.reasoning:
        return {}

    effort = settings.reasoning_effort
    if not effort:
        if profile.reasoning_family == "qwen":
            return {"enable_thinking": False}
        if profile.reasoning_family == "claude":
            return {"thinking": {"type": "disabled"}}
        return {}

    budget = _thinking_budget(profile, effort)
    if profile.provider == "openrouter":
        if profile.reasoning_family in ("openai", "grok", "claude"):
            return {"reasoning": {"effort": effort}}
        if profile.reasoning_family in ("qwen", "generic"):
            return {"reasoning": {"max_tokens": budget}}
    if profile.reasoning_family == "qwen":
        return {"enable_thinking": True, "thinking_budget": budget}
    if profile.reasoning_family in ("grok", "openai"):
        return {"reasoning_effort": effort}
    if profile.reasoning_family == "claude":
        ceiling = settings.max_tokens or DEFAULT_MAX_TOKENS
        return {"thinking": {"type": "enabled", "budget_tokens": int(max(min(budget, ceiling), 1024))}}
    return {}


def build_request_params(
    profile: ModelProfile,
    settings: GenerationSettings,
    messages: Sequence[RequestMessage],
) -> dict[str, Any]:
    """Assemble the keyword arguments for ``chat.completions.create``."""
    params: dict[str, Any] = {
        "model": profile.model_id,
        "messages": [message.to_param() for message in messages],
        "stream": bool(settings.stream),
    }
    if not profile.reasoning:
        if settings.temperature is not None:
            params["temperature"] = settings.temperature
        if settings.top_p is not None:
            params["top_p"] = settings.top_p
    if profile.is_openai_reasoning:
        if settings.max_tokens is not None:
            params["max_completion_tokens"] = settings.max_tokens
    elif settings.max_tokens is not None:
        params["max_tokens"] = settings.max_tokens
    if profile.provider == "openrouter" and "deepseek-r1" in profile.model_id.lower():
        params["include_reasoning"] = True
    params.update(reasoning_controls(profile, settings))
    if settings.custom_parameters:
        params.update(settings.custom_parameters)
    return params
