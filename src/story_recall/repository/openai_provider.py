"""OpenAI-based embedding provider."""

from __future__ import annotations

import asyncio
import os
from typing import Any

from loguru import logger

from story_recall.repository.embedding_provider import (
    EmbeddingProvider,
    check_dimensions,
    prepare_input,
)
from story_recall.repository.semantic_errors import (
    ProviderRejectedError,
    ProviderUnavailableError,
    SemanticDependenciesMissingError,
)

# OpenAI exception class names grouped by how the engine treats them.
_UNAVAILABLE_ERRORS = (
    "APIConnectionError",
    "APITimeoutError",
    "AuthenticationError",
    "PermissionDeniedError",
    "RateLimitError",
    "InternalServerError",
)
_REJECTED_ERRORS = ("BadRequestError", "UnprocessableEntityError", "NotFoundError")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by OpenAI's embeddings API."""

    def __init__(
        self,
        model_name: str = "text-embedding-3-large",
        *,
        batch_size: int = 64,
        dimensions: int = 3072,
        request_dimensions: bool = False,
        max_input_chars: int = 8000,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.model_name = model_name
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_input_chars = max_input_chars
        self._request_dimensions = request_dimensions
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: Any | None = None
        self._openai: Any | None = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        async with self._client_lock:
            if self._client is not None:
                return self._client

            try:
                import openai
            except ImportError as exc:  # pragma: no cover - covered via monkeypatch tests
                raise SemanticDependenciesMissingError(
                    "OpenAI dependency is missing. Reinstall story-recall: pip install story-recall"
                ) from exc

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise SemanticDependenciesMissingError(
                    "OpenAI embedding provider requires OPENAI_API_KEY."
                )

            # Retries are owned by the sync orchestrator
            self._client = openai.AsyncOpenAI(
                api_key=api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
            self._openai = openai
            return self._client

    def _classify_error(self, exc: Exception) -> Exception:
        """Map an OpenAI SDK exception onto the engine's error taxonomy."""
        module = self._openai
        for name in _REJECTED_ERRORS:
            error_type = getattr(module, name, None)
            if isinstance(error_type, type) and isinstance(exc, error_type):
                return ProviderRejectedError(f"OpenAI rejected embedding input: {exc}")
        for name in _UNAVAILABLE_ERRORS:
            error_type = getattr(module, name, None)
            if isinstance(error_type, type) and isinstance(exc, error_type):
                return ProviderUnavailableError(f"OpenAI embeddings unavailable: {exc}")

        status_code = getattr(exc, "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code < 500 and status_code != 429:
            return ProviderRejectedError(f"OpenAI rejected embedding input: {exc}")
        return ProviderUnavailableError(f"OpenAI embeddings unavailable: {exc}")

    async def _create(self, client: Any, batch: list[str]) -> Any:
        kwargs: dict[str, Any] = {"model": self.model_name, "input": batch}
        if self._request_dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            return await client.embeddings.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            mapped = self._classify_error(exc)
            logger.warning(f"OpenAI embedding request failed ({mapped.kind}): {exc}")
            raise mapped from exc

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        prepared = [prepare_input(text, self.max_input_chars) for text in texts]
        client = await self._get_client()
        all_vectors: list[list[float]] = []

        for start in range(0, len(prepared), self.batch_size):
            batch = prepared[start : start + self.batch_size]
            response = await self._create(client, batch)
            vectors_by_index: dict[int, list[float]] = {
                int(item.index): [float(value) for value in item.embedding]
                for item in response.data
            }
            for index in range(len(batch)):
                vector = vectors_by_index.get(index)
                if vector is None:
                    raise ProviderUnavailableError(
                        "OpenAI embedding response is missing expected vector index."
                    )
                all_vectors.append(vector)

        check_dimensions(all_vectors, self.dimensions, self.model_name)
        return all_vectors

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        return vectors[0]

    async def embed_query(self, text: str) -> list[float]:
        return await self.embed(text)
