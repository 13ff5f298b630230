"""Gemini embeddings through the ``batchEmbedContents`` REST method."""

from __future__ import annotations

from typing import Any, Sequence

from codeindex.embeddings.errors import (
    AuthFailedError,
    EmbedError,
    InvalidResponseShapeError,
    ModelUnavailableError,
)
from codeindex.embeddings.http import HttpJsonEmbedder

__all__ = ["DEFAULT_GEMINI_URL", "GeminiEmbedder"]

DEFAULT_GEMINI_URL = "https://generativelanguage.googleapis.com"
TASK_TYPE = "RETRIEVAL_DOCUMENT"


class GeminiEmbedder(HttpJsonEmbedder):
    """Embed texts with a Google Gemini embedding model."""

    provider_name = "gemini"
    default_base_url = DEFAULT_GEMINI_URL

    @property
    def _model_path(self) -> str:
        name = self.model
        return name if name.startswith("models/") else f"models/{name}"

    def _classify_body(
        self,
        status: int,
        body: str,
    ) -> type[EmbedError] | None:
        # Gemini answers 400 for bad keys and unsupported models.
        if "API_KEY_INVALID" in body or "PERMISSION_DENIED" in body:
            return AuthFailedError
        if status == 400 and "is not supported for embedContent" in body:
            return ModelUnavailableError
        return None

    def _build_request(self, text: str) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._model_path,
            "content": {"parts": [{"text": text}]},
            "taskType": TASK_TYPE,
        }
        if self.config.send_dimensions:
            request["outputDimensionality"] = self.dimension
        return request

    async def _request(
        self,
        texts: Sequence[str],
    ) -> Sequence[Sequence[float]]:
        body = await self._post_json(
            f"/v1beta/{self._model_path}:batchEmbedContents",
            {"requests": [self._build_request(text) for text in texts]},
            headers={"x-goog-api-key": self.config.api_key or ""},
        )
        embeddings = body.get("embeddings") if isinstance(body, dict) else None
        if not isinstance(embeddings, list):
            raise self._error(
                InvalidResponseShapeError,
                "Gemini response is missing the 'embeddings' array.",
            )
        vectors: list[Sequence[float]] = []
        for item in embeddings:
            values = item.get("values") if isinstance(item, dict) else None
            if not isinstance(values, list):
                raise self._error(
                    InvalidResponseShapeError,
                    "Gemini embedding entry is missing 'values'.",
                )
            vectors.append(values)
        return vectors
