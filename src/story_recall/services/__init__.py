"""Retrieval engine services."""
