"""Embeddings from self-hosted servers exposing the OpenAI wire format."""

from __future__ import annotations

from openai import AsyncOpenAI

from codeindex.embeddings.openai import OpenAIEmbedder

__all__ = ["OpenAICompatibleEmbedder"]

# The SDK refuses to build a client without a key; local servers ignore it.
_PLACEHOLDER_KEY = "EMPTY"


class OpenAICompatibleEmbedder(OpenAIEmbedder):
    """OpenAI wire client pointed at a custom ``base_url``."""

    provider_name = "openai-compatible"

    def _build_client(self) -> AsyncOpenAI:
        if not self.config.base_url:
            raise ValueError("openai-compatible embedder requires a base_url")
        return AsyncOpenAI(
            api_key=self.config.api_key or _PLACEHOLDER_KEY,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            max_retries=0,
        )
