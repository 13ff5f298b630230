"""Ollama embeddings through the local ``/api/embed`` endpoint."""

from __future__ import annotations

from typing import Sequence

from codeindex.embeddings.errors import (
    EmbedError,
    InvalidResponseShapeError,
    ModelUnavailableError,
)
from codeindex.embeddings.http import HttpJsonEmbedder

__all__ = ["DEFAULT_OLLAMA_URL", "OllamaEmbedder"]

DEFAULT_OLLAMA_URL = "http://localhost:11434"

_MODEL_MISSING_MARKERS = ("not found", "does not support", "pull the model")


class OllamaEmbedder(HttpJsonEmbedder):
    """Embed texts with a model served by Ollama."""

    provider_name = "ollama"
    default_base_url = DEFAULT_OLLAMA_URL

    def _classify_body(
        self,
        status: int,
        body: str,
    ) -> type[EmbedError] | None:
        lowered = body.lower()
        if status in (400, 404, 500) and any(
            marker in lowered for marker in _MODEL_MISSING_MARKERS
        ):
            return ModelUnavailableError
        return None

    async def _request(
        self,
        texts: Sequence[str],
    ) -> Sequence[Sequence[float]]:
        body = await self._post_json(
            "/api/embed",
            {"model": self.model, "input": list(texts)},
        )
        embeddings = body.get("embeddings") if isinstance(body, dict) else None
        if not isinstance(embeddings, list):
            raise self._error(
                InvalidResponseShapeError,
                "Ollama response is missing the 'embeddings' array.",
            )
        return embeddings
