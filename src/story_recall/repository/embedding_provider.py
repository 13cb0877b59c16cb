"""Embedding provider protocol and shared input/output checks."""

from typing import Protocol, Sequence

from story_recall.repository.semantic_errors import ProviderRejectedError, SchemaMismatchError
from story_recall.services.text_normalizer import truncate_text


class EmbeddingProvider(Protocol):
    """Contract for embedding providers."""

    model_name: str
    dimensions: int
    max_input_chars: int

    async def embed(self, text: str) -> list[float]:
        """Embed one text (entity or query)."""
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of entity texts."""
        ...


def prepare_input(text: str, max_input_chars: int) -> str:
    """Validate and truncate provider input.

    Raises:
        ProviderRejectedError: if the text is empty after stripping
    """
    stripped = text.strip()
    if not stripped:
        raise ProviderRejectedError("Cannot embed empty text")
    return truncate_text(stripped, max_input_chars)


def check_dimensions(vectors: Sequence[Sequence[float]], expected: int, model_name: str) -> None:
    """Fail with ``SchemaMismatchError`` if any vector has the wrong length."""
    for vector in vectors:
        if len(vector) != expected:
            raise SchemaMismatchError(
                f"Embedding model {model_name} returned {len(vector)}-dimensional vectors "
                f"but provider was configured for {expected} dimensions."
            )
