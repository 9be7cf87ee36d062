"""Error taxonomy shared by the completion engine and the ingestion orchestrator.

Completion-side errors are ``ApiError`` subclasses: each carries the HTTP status
returned to the caller and a human-readable message. Ingestion-side errors are
raised by indexing collaborators and classified by the orchestrator.
"""

from __future__ import annotations


class ApiError(Exception):
    """An error surfaced to a query caller with an HTTP status code."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}, {self.message!r})"


class ValidationError(ApiError):
    """Missing or invalid request input (e.g. no prompt)."""

    def __init__(self, message: str) -> None:
        super().__init__(400, message)


class ModerationRejectedError(ApiError):
    """The moderation collaborator flagged the query."""

    def __init__(self) -> None:
        super().__init__(400, "Flagged content")


class EmbeddingError(ApiError):
    """The query embedding could not be computed after all retries."""

    def __init__(self, message: str) -> None:
        super().__init__(400, message)


class RetrievalError(ApiError):
    """The vector index could not be queried."""

    def __init__(self, message: str) -> None:
        super().__init__(400, message)


class RetrievalEmptyError(RetrievalError):
    """No section passed the similarity threshold."""

    def __init__(self) -> None:
        super().__init__("No relevant sections found")


class ProviderError(ApiError):
    """The model provider rejected the completion request."""

    def __init__(self, message: str) -> None:
        super().__init__(400, f"Unable to retrieve completions response: {message}")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class QuotaExceededError(Exception):
    """The project reached its indexed-content quota. Fatal to a training run."""


class TransientItemError(Exception):
    """A single item failed to index. Recorded and skipped."""
