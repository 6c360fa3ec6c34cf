"""
Error taxonomy for the recall engine.

Store integrity errors subclass the builtin exception a caller would
naturally catch (ValueError / LookupError) so generic handlers keep working.
"""

from typing import Optional


class RecallError(Exception):
    """Base class for every error raised by recall."""


class DuplicateKey(RecallError, ValueError):
    """A row with the same primary key already exists."""


class NotFound(RecallError, LookupError):
    """A referenced session or memory does not exist."""


class ForeignKeyViolation(RecallError, ValueError):
    """A row references a parent that does not exist."""


class InvalidArgument(RecallError, ValueError):
    """Malformed role, empty required field, or otherwise invalid input."""


class ExternalUnavailable(RecallError):
    """The semantic index is unreachable, misconfigured, or answered garbage."""

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason or "external_unavailable"


class ToolFailure(RecallError):
    """A sandboxed tool failed; converted into a tool result by the agent loop."""


class CompletionError(RecallError):
    """The completion service is not configured or returned an error."""
