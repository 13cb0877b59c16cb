"""Main CLI entry point for story-recall."""  # pragma: no cover

from story_recall.cli.app import app  # pragma: no cover

# Register commands
from story_recall.cli.commands import embeddings  # noqa: F401  # pragma: no cover

if __name__ == "__main__":  # pragma: no cover
    app()
