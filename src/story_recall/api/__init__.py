"""HTTP API for story-recall."""
