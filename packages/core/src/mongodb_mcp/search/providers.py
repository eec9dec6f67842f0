"""Embedding providers turning text into vectors for vector search."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import requests

from mongodb_mcp.config import Settings
from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)

DEFAULT_VOYAGE_MODEL = "voyage-3-large"

# Voyage rejects a request carrying any parameter it does not know
VOYAGE_PARAMETERS = ("input_type", "output_dimension", "output_dtype", "truncation")


@runtime_checkable
class EmbeddingsProvider(Protocol):
    async def embed(
        self, model: str, content: Sequence[str], parameters: Mapping[str, Any]
    ) -> list[list[Any]]: ...


class VoyageEmbeddingsProvider:
    """Voyage AI embeddings over its REST API.

    Requests go through ``requests`` so proxies configured in the
    environment are honoured.
    """

    def __init__(
        self,
        api_key: str,
        *,
        url: str = "https://api.voyageai.com/v1/embeddings",
        http: requests.Session | None = None,
        timeout: float = 60,
    ):
        if not api_key:
            raise ValueError("A Voyage AI API key is required")
        self._api_key = api_key
        self._url = url
        self._http = http or requests.Session()
        self._timeout = timeout

    @classmethod
    def is_configured_in(cls, settings: Settings) -> bool:
        return bool(settings.voyage_api_key)

    async def embed(
        self, model: str, content: Sequence[str], parameters: Mapping[str, Any]
    ) -> list[list[Any]]:
        return await asyncio.to_thread(self._embed, model, list(content), dict(parameters))

    def _embed(self, model: str, content: list[str], parameters: dict[str, Any]) -> list[list[Any]]:
        body: dict[str, Any] = {"model": model, "input": content}
        body.update(
            {key: parameters[key] for key in VOYAGE_PARAMETERS if parameters.get(key) is not None}
        )
        try:
            resp = self._http.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error(
                f"Voyage AI embeddings request failed: {e}",
                extra=log_extra(LogId.EMBEDDINGS_PROVIDER_FAILURE, "VoyageEmbeddingsProvider"),
            )
            raise

        data = sorted(resp.json().get("data") or [], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


def get_embeddings_provider(settings: Settings) -> EmbeddingsProvider | None:
    """The provider configured in ``settings``, or None."""
    if VoyageEmbeddingsProvider.is_configured_in(settings):
        return VoyageEmbeddingsProvider(settings.voyage_api_key, url=settings.voyage_api_url)
    return None
