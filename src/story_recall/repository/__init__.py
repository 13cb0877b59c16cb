"""Repositories: embedding providers, entity reads and the vector store."""
