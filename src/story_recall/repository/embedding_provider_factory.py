"""Factory for creating configured embedding providers."""

from story_recall.config import StoryRecallConfig
from story_recall.repository.embedding_provider import EmbeddingProvider
from story_recall.repository.fastembed_provider import FastEmbedEmbeddingProvider
from story_recall.repository.openai_provider import OpenAIEmbeddingProvider


def create_embedding_provider(app_config: StoryRecallConfig) -> EmbeddingProvider:
    """Create an embedding provider based on config.

    When embedding_dimensions is set in config, it overrides the provider's
    default dimensions (384 for FastEmbed, 3072 for OpenAI). For OpenAI
    text-embedding-3 models the override is also sent with the request so the
    API returns shortened vectors.
    """
    provider_name = app_config.embedding_provider.strip().lower()
    extra_kwargs: dict = {}
    if app_config.embedding_dimensions is not None:
        extra_kwargs["dimensions"] = app_config.embedding_dimensions

    if provider_name == "fastembed":
        model_name = app_config.embedding_model
        if model_name.startswith("text-embedding-"):
            model_name = "bge-small-en-v1.5"
        return FastEmbedEmbeddingProvider(
            model_name=model_name,
            batch_size=app_config.embedding_batch_size,
            max_input_chars=app_config.embedding_max_input_chars,
            **extra_kwargs,
        )

    if provider_name == "openai":
        model_name = app_config.embedding_model or "text-embedding-3-large"
        if model_name.startswith("bge-"):
            model_name = "text-embedding-3-large"
        request_dimensions = bool(extra_kwargs) and model_name.startswith("text-embedding-3")
        return OpenAIEmbeddingProvider(
            model_name=model_name,
            batch_size=app_config.embedding_batch_size,
            max_input_chars=app_config.embedding_max_input_chars,
            base_url=app_config.openai_base_url,
            timeout=app_config.embedding_timeout,
            request_dimensions=request_dimensions,
            **extra_kwargs,
        )

    raise ValueError(f"Unsupported embedding provider: {provider_name}")
