"""Typed errors for embedding generation, vector storage and retrieval."""


class StoryRecallError(RuntimeError):
    """Base class for engine errors. ``kind`` is a stable label used in reports."""

    kind = "error"


class ProviderUnavailableError(StoryRecallError):
    """Transport, auth, rate-limit or timeout failure talking to the embedding provider.

    Transient: callers retry with backoff.
    """

    kind = "provider_unavailable"


class ProviderRejectedError(StoryRecallError):
    """The provider refused the input (content policy, malformed or empty input).

    Permanent for the given input: retrying fails identically.
    """

    kind = "provider_rejected"


class SchemaMismatchError(StoryRecallError):
    """The provider returned vectors of an unexpected dimensionality."""

    kind = "schema_mismatch"


class StoreUnavailableError(StoryRecallError):
    """The vector store could not be read or written. Transient."""

    kind = "store_unavailable"


class EntityNotFoundError(StoryRecallError):
    """A novel, chapter, card or summary does not exist."""

    kind = "not_found"


class SemanticDependenciesMissingError(StoryRecallError):
    """Raised when an embedding dependency is unavailable or misconfigured."""

    kind = "dependencies_missing"


TRANSIENT_ERRORS = (ProviderUnavailableError, StoreUnavailableError)
