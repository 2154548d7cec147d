"""
Embedding Client for MedEvidence

Async HTTP client for the query embedding provider with:
- Request shape {text, model} -> response {embedding}
- Retry logic with linear backoff (attempt * EMBEDDING_RETRY_BACKOFF_SECONDS)
- Bounded in-process cache keyed by exact query text
- Typed failure once every attempt is exhausted
"""

import asyncio
import logging
import os
from numbers import Real

import httpx

from medevidence.observability.metrics import record_embedding_cache
from medevidence.rag.cache import BoundedCache

logger = logging.getLogger(__name__)

# Defaults from environment
DEFAULT_EMBEDDING_URL = os.environ.get(
    "EMBEDDING_URL", "http://localhost:8001/api/embeddings"
)
DEFAULT_EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
DEFAULT_TIMEOUT = float(os.environ.get("EMBEDDING_TIMEOUT_SECONDS", "10"))

# Retry configuration
MAX_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = float(os.environ.get("EMBEDDING_RETRY_BACKOFF_SECONDS", "1.0"))


class EmbeddingProviderError(Exception):
    """Raised when the embedding provider fails on every attempt."""

    def __init__(self, message: str, attempts: int = MAX_ATTEMPTS) -> None:
        super().__init__(message)
        self.attempts = attempts


def _parse_embedding(data: object) -> list[float] | None:
    """Extract a numeric embedding list from a provider response body."""
    if not isinstance(data, dict):
        return None
    embedding = data.get("embedding")
    if not isinstance(embedding, list) or not embedding:
        return None
    if not all(isinstance(v, Real) and not isinstance(v, bool) for v in embedding):
        return None
    return [float(v) for v in embedding]


class EmbeddingClient:
    """Async client turning query text into an embedding vector."""

    def __init__(
        self,
        url: str = DEFAULT_EMBEDDING_URL,
        model: str = DEFAULT_EMBEDDING_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        cache: BoundedCache[str, list[float]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.cache = cache if cache is not None else BoundedCache()
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        """
        Return the embedding for a query, serving repeats from the cache.

        Retries up to max_attempts times with linear backoff and raises
        EmbeddingProviderError when every attempt fails.
        """
        cached = self.cache.get(text)
        if cached is not None:
            record_embedding_cache(hit=True)
            return cached
        record_embedding_cache(hit=False)

        embedding = await self._request_with_retries(text)
        self.cache.set(text, embedding)
        return embedding

    async def _request_with_retries(self, text: str) -> list[float]:
        last_error = "no attempts made"

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout), transport=self._transport
                ) as client:
                    response = await client.post(
                        self.url, json={"text": text, "model": self.model}
                    )
                    response.raise_for_status()
                    embedding = _parse_embedding(response.json())
                    if embedding is not None:
                        return embedding
                    last_error = "response did not contain a numeric embedding"
                    logger.warning(
                        "Embedding response malformed (attempt %d/%d)",
                        attempt,
                        self.max_attempts,
                    )

            except (httpx.ConnectTimeout, httpx.ReadTimeout) as e:
                last_error = f"timeout: {e}"
                logger.warning(
                    "Embedding timeout (attempt %d/%d): %s",
                    attempt,
                    self.max_attempts,
                    e,
                )
            except httpx.ConnectError as e:
                last_error = f"connection error: {e}"
                logger.warning(
                    "Embedding connection error (attempt %d/%d): %s",
                    attempt,
                    self.max_attempts,
                    e,
                )
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}"
                logger.warning(
                    "Embedding HTTP error %d (attempt %d/%d): %s",
                    e.response.status_code,
                    attempt,
                    self.max_attempts,
                    e,
                )
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e)
                logger.error(
                    "Unexpected embedding error (attempt %d/%d): %s",
                    attempt,
                    self.max_attempts,
                    e,
                )

            # Linear backoff before retry (skip on last attempt)
            if attempt < self.max_attempts:
                wait = attempt * self.backoff_seconds
                if wait > 0:
                    logger.info("Retrying embedding in %.1fs...", wait)
                    await asyncio.sleep(wait)

        logger.error("Embedding failed after %d attempts: %s", self.max_attempts, last_error)
        raise EmbeddingProviderError(
            f"Embedding provider failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        )

    async def health_check(self) -> bool:
        """True when the provider answers a single embedding request."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(5.0), transport=self._transport
            ) as client:
                response = await client.post(
                    self.url, json={"text": "health check", "model": self.model}
                )
                response.raise_for_status()
                return _parse_embedding(response.json()) is not None
        except (httpx.HTTPError, ValueError):
            return False
