"""Shared JSON-over-HTTP plumbing for embedders without an SDK."""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from codeindex.embeddings.base import (
    BaseEmbedder,
    ProviderConfig,
    parse_retry_after,
)
from codeindex.embeddings.errors import (
    EmbedError,
    InvalidResponseShapeError,
    ServiceUnavailableError,
    error_type_for_status,
)

__all__ = ["HttpJsonEmbedder"]

_BODY_PREVIEW = 500


class HttpJsonEmbedder(BaseEmbedder):
    """Embedder talking to a JSON API through :class:`httpx.AsyncClient`."""

    default_base_url: str | None = None

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    @property
    def base_url(self) -> str:
        value = self.config.base_url or self.default_base_url
        if not value:
            raise ValueError(f"{self.provider} embedder requires a base_url")
        return value.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _classify_body(
        self,
        status: int,
        body: str,
    ) -> type[EmbedError] | None:
        """Return a more specific error type for ``body`` when recognized."""

        return None

    async def _post_json(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(
                url,
                json=dict(payload),
                headers=dict(headers or {}),
            )
        except httpx.TimeoutException as exc:
            raise self._error(
                ServiceUnavailableError,
                f"Timed out calling {self.provider} at {url}.",
                detail=f"{exc.__class__.__name__}: {url}",
            ) from exc
        except httpx.TransportError as exc:
            raise self._error(
                ServiceUnavailableError,
                f"Unable to reach {self.provider} at {url}: {exc}",
                detail=f"{exc.__class__.__name__}: {url}",
            ) from exc
        except httpx.DecodingError as exc:
            raise self._error(
                InvalidResponseShapeError,
                f"{self.provider} sent an undecodable body from {url}: {exc}",
                detail=f"{exc.__class__.__name__}: {url}",
            ) from exc
        except httpx.HTTPError as exc:
            # Redirect loops and other request failures outside transport.
            raise self._error(
                ServiceUnavailableError,
                f"Request to {self.provider} at {url} failed: {exc}",
                detail=f"{exc.__class__.__name__}: {url}",
            ) from exc

        if response.status_code >= 400:
            raise self._error_for_response(response, url=url)

        try:
            return response.json()
        except ValueError as exc:
            raise self._error(
                InvalidResponseShapeError,
                f"{self.provider} returned a non-JSON body.",
                status_code=response.status_code,
                detail=response.text[:_BODY_PREVIEW],
            ) from exc

    def _error_for_response(
        self,
        response: httpx.Response,
        *,
        url: str,
    ) -> EmbedError:
        status = response.status_code
        body = response.text[:_BODY_PREVIEW]
        error_type = self._classify_body(status, body)
        if error_type is None:
            error_type = error_type_for_status(status)
        return self._error(
            error_type,
            f"{self.provider} returned HTTP {status} for {url}.",
            status_code=status,
            detail=body or None,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
