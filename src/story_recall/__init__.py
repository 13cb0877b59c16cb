"""story-recall - hybrid semantic retrieval and embedding sync for novel writing tools."""

__version__ = "0.3.0"
