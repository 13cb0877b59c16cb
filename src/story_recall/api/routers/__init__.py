"""API routers."""

from . import embedding_router as embeddings

__all__ = ["embeddings"]
