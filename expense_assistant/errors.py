"""
Error taxonomy for the expense assistant.

Every failure that can reach the request boundary carries an ErrorKind so the
caller can render a structured error instead of a bare exception.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failure surfaced to the caller."""
    TRANSCRIPTION_FAILURE = "TranscriptionFailure"
    CLASSIFICATION_ERROR = "ClassificationError"
    QUERY_PARSE_ERROR = "QueryParseError"
    EMBEDDING_ERROR = "EmbeddingError"
    PERSISTENCE_ERROR = "PersistenceError"
    NOT_FOUND = "NotFound"
    INTERNAL = "InternalError"


class AssistantError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.CLASSIFICATION_ERROR

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"
        return self.message


class TranscriptionError(AssistantError):
    """No speech detected, empty input, or the transcription service failed."""
    kind = ErrorKind.TRANSCRIPTION_FAILURE


class ClassificationError(AssistantError):
    """The text-generation service failed or returned an unusable payload."""
    kind = ErrorKind.CLASSIFICATION_ERROR


class QueryParseError(AssistantError):
    """The query classifier's JSON could not be parsed and no heuristic applied."""
    kind = ErrorKind.QUERY_PARSE_ERROR


class EmbeddingError(AssistantError):
    """The embedding service failed; nothing has been written."""
    kind = ErrorKind.EMBEDDING_ERROR


class PersistenceError(AssistantError):
    """A durable write failed. Cached state is left untouched."""
    kind = ErrorKind.PERSISTENCE_ERROR


class SessionNotFoundError(AssistantError):
    """The session id is not present in the session cache."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} not found")
        self.session_id = session_id
