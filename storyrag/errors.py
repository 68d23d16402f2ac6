"""Exception hierarchy for storyrag.

Sub-search and rerank failures are recovered where they happen; only
configuration and indexing problems reach the caller.
"""


class StoryRagError(Exception):
    """Base class for all storyrag errors."""


class ConfigurationError(StoryRagError):
    """Invalid configuration, or a configured capability that is unavailable."""


class InvalidQueryError(StoryRagError):
    """Empty or malformed query. Searchers turn this into an empty result."""


class TransientDependencyError(StoryRagError):
    """An external dependency timed out, failed, or returned a server error."""

    def __init__(self, message: str, dependency: str = "dependency"):
        super().__init__(message)
        self.dependency = dependency


class ProviderResponseError(TransientDependencyError):
    """The provider answered, but the payload did not match the expected shape."""


class CircuitOpenError(StoryRagError):
    """Fast failure from an open circuit breaker."""

    def __init__(self, name: str, remaining_seconds: float):
        super().__init__(
            f"Circuit '{name}' is open, retry in {remaining_seconds:.1f}s"
        )
        self.name = name
        self.remaining_seconds = remaining_seconds


class ServiceUnavailableError(StoryRagError):
    """A capability is disabled and no fallback was allowed."""


class IndexingError(StoryRagError):
    """A source could not be indexed. Its previous index is left untouched."""

    def __init__(self, message: str, source_id: str):
        super().__init__(message)
        self.source_id = source_id
