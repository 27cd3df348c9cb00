"""OpenAI embedding gateway.

Turns text into fixed-length vectors through the OpenAI embeddings endpoint.
The model (and therefore the dimension) is fixed per client instance.
"""

from __future__ import annotations

from typing import List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when the embedding service cannot produce a vector."""


def is_transient_http_error(exc: BaseException) -> bool:
    """Retry on network errors, rate limits and 5xx responses only."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class EmbeddingClient:
    """
    OpenAI client for generating embeddings.

    Usage:
        client = EmbeddingClient.from_settings()
        vector = await client.embed("Học phí ngành CNTT là bao nhiêu?")
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "EmbeddingClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout_seconds,
        )

    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """
        Batch embeddings for multiple inputs in one request.

        Raises:
            EmbeddingError: If the API key is missing, the request fails after
                retries, or the response is malformed.
        """
        if not texts:
            return []
        if not self.api_key:
            raise EmbeddingError("OpenAI API key not configured")

        try:
            data = await self._request(texts)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("OpenAI embedding request failed", model=self.model, error=str(e))
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        vectors = [item.get("embedding") for item in items]
        if len(vectors) != len(texts) or any(not v for v in vectors):
            raise EmbeddingError("Embedding response did not contain one vector per input")

        logger.debug(
            "Embeddings generated",
            model=self.model,
            count=len(vectors),
            embedding_dim=len(vectors[0]),
        )
        return vectors

    @retry(
        retry=retry_if_exception(is_transient_http_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, texts: List[str]) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "input": [text[:8000] for text in texts],  # Truncate to avoid token limits
                    "encoding_format": "float",
                },
            )
            response.raise_for_status()
            return response.json()
