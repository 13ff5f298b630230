"""OpenAI embeddings via the official async SDK."""

from __future__ import annotations

from typing import Any, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIResponseValidationError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)

from codeindex.embeddings.base import (
    BaseEmbedder,
    ProviderConfig,
    parse_retry_after,
)
from codeindex.embeddings.errors import (
    AuthFailedError,
    EmbedError,
    InvalidResponseShapeError,
    ModelUnavailableError,
    RateLimitedError,
    RequestRejectedError,
    ServiceUnavailableError,
)

__all__ = ["OpenAIEmbedder"]


class OpenAIEmbedder(BaseEmbedder):
    """Embed texts through ``client.embeddings.create``.

    SDK-level retries are disabled so the shared retry policy is the only one
    in effect.
    """

    provider_name = "openai"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._owns_client = client is None
        self._client = client or self._build_client()

    def _build_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            max_retries=0,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def _request(
        self,
        texts: Sequence[str],
    ) -> Sequence[Sequence[float]]:
        kwargs: dict[str, Any] = {"model": self.model, "input": list(texts)}
        if self.config.send_dimensions:
            kwargs["dimensions"] = self.dimension
        try:
            response = await self._client.embeddings.create(**kwargs)
        except (APIError, httpx.HTTPError) as exc:
            raise self._translate_exception(exc) from exc

        data = getattr(response, "data", None)
        if not isinstance(data, list):
            raise self._error(
                InvalidResponseShapeError,
                f"{self.provider} response is missing the 'data' array.",
            )
        ordered = sorted(enumerate(data), key=_response_position)
        vectors: list[Sequence[float]] = []
        for _, item in ordered:
            embedding = getattr(item, "embedding", None)
            if not isinstance(embedding, list):
                raise self._error(
                    InvalidResponseShapeError,
                    f"{self.provider} response item has no embedding list.",
                )
            vectors.append(embedding)
        return vectors

    def _translate_exception(self, exc: Exception) -> EmbedError:
        message = str(exc) or exc.__class__.__name__
        status: int | None = None
        retry_after: float | None = None
        if isinstance(exc, APIStatusError):
            status = exc.status_code
            retry_after = parse_retry_after(
                exc.response.headers.get("retry-after")
            )

        error_type: type[EmbedError]
        if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
            error_type = AuthFailedError
        elif isinstance(exc, RateLimitError):
            # Exhausted quota returns 429 too but never recovers by waiting.
            if getattr(exc, "code", None) == "insufficient_quota":
                error_type = RequestRejectedError
            else:
                error_type = RateLimitedError
        elif isinstance(exc, NotFoundError):
            error_type = ModelUnavailableError
        elif isinstance(exc, (APIConnectionError, httpx.TransportError)):
            error_type = ServiceUnavailableError
        elif isinstance(exc, APIResponseValidationError):
            error_type = InvalidResponseShapeError
        elif status is not None and (status >= 500 or status == 408):
            error_type = ServiceUnavailableError
        elif isinstance(exc, BadRequestError) and _mentions_model(exc):
            error_type = ModelUnavailableError
        else:
            error_type = RequestRejectedError

        detail = None
        if error_type is ServiceUnavailableError:
            address = self.config.base_url or "https://api.openai.com/v1"
            detail = f"{exc.__class__.__name__}: {address}"
        return self._error(
            error_type,
            message,
            status_code=status,
            detail=detail,
            retry_after=retry_after,
        )


def _mentions_model(exc: BadRequestError) -> bool:
    param = getattr(exc, "param", None)
    if param == "model":
        return True
    return "model" in str(exc).lower() and "does not exist" in str(exc).lower()


def _response_position(pair: tuple[int, Any]) -> int:
    position, item = pair
    index = getattr(item, "index", None)
    return index if isinstance(index, int) else position
