"""CLI commands for story-recall."""

from . import embeddings

__all__ = ["embeddings"]
