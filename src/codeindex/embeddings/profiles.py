"""Known embedding model profiles keyed by provider and model id."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

__all__ = [
    "DEFAULT_MAX_TOKENS_PER_ITEM",
    "ModelProfile",
    "lookup_profile",
]

DEFAULT_MAX_TOKENS_PER_ITEM = 8_191


@dataclass(frozen=True, slots=True)
class ModelProfile:
    """Static facts about an embedding model.

    ``tokenizer`` names a tiktoken encoding when the model's tokenizer is
    known; ``None`` means token counts are approximated.
    """

    provider: str
    model: str
    dimension: int
    max_tokens_per_item: int
    tokenizer: str | None = None
    supports_dimension_override: bool = False

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.model}"


def _profiles(
    *entries: ModelProfile,
) -> Mapping[tuple[str, str], ModelProfile]:
    return {(entry.provider, entry.model): entry for entry in entries}


_PROFILES = _profiles(
    ModelProfile(
        provider="openai",
        model="text-embedding-3-small",
        dimension=1_536,
        max_tokens_per_item=8_191,
        tokenizer="cl100k_base",
        supports_dimension_override=True,
    ),
    ModelProfile(
        provider="openai",
        model="text-embedding-3-large",
        dimension=3_072,
        max_tokens_per_item=8_191,
        tokenizer="cl100k_base",
        supports_dimension_override=True,
    ),
    ModelProfile(
        provider="openai",
        model="text-embedding-ada-002",
        dimension=1_536,
        max_tokens_per_item=8_191,
        tokenizer="cl100k_base",
    ),
    ModelProfile(
        provider="ollama",
        model="nomic-embed-text",
        dimension=768,
        max_tokens_per_item=8_192,
    ),
    ModelProfile(
        provider="ollama",
        model="mxbai-embed-large",
        dimension=1_024,
        max_tokens_per_item=512,
    ),
    ModelProfile(
        provider="ollama",
        model="all-minilm",
        dimension=384,
        max_tokens_per_item=256,
    ),
    ModelProfile(
        provider="ollama",
        model="bge-m3",
        dimension=1_024,
        max_tokens_per_item=8_192,
    ),
    ModelProfile(
        provider="ollama",
        model="snowflake-arctic-embed2",
        dimension=1_024,
        max_tokens_per_item=8_192,
    ),
    ModelProfile(
        provider="gemini",
        model="text-embedding-004",
        dimension=768,
        max_tokens_per_item=2_048,
        supports_dimension_override=True,
    ),
    ModelProfile(
        provider="gemini",
        model="gemini-embedding-001",
        dimension=3_072,
        max_tokens_per_item=2_048,
        supports_dimension_override=True,
    ),
)

# OpenAI-compatible gateways usually proxy OpenAI model names verbatim.
_PROVIDER_ALIASES: Mapping[str, tuple[str, ...]] = {
    "openai-compatible": ("openai-compatible", "openai"),
}


def _normalize_model(provider: str, model: str) -> str:
    normalized = model.strip()
    if provider == "ollama" and normalized.endswith(":latest"):
        normalized = normalized[: -len(":latest")]
    if provider == "gemini" and normalized.startswith("models/"):
        normalized = normalized[len("models/") :]
    return normalized


def lookup_profile(provider: str, model: str) -> ModelProfile | None:
    """Return the profile for ``provider``/``model`` or ``None``.

    Example:
        >>> lookup_profile("ollama", "nomic-embed-text:latest").dimension
        768
        >>> lookup_profile("ollama", "unknown-model") is None
        True
    """

    provider_key = provider.strip().lower()
    for candidate in _PROVIDER_ALIASES.get(provider_key, (provider_key,)):
        name = _normalize_model(candidate, model)
        profile = _PROFILES.get((candidate, name))
        if profile is not None:
            return profile
    return None
