from .errors import (
    CompletionError,
    DuplicateKey,
    ExternalUnavailable,
    ForeignKeyViolation,
    InvalidArgument,
    NotFound,
    RecallError,
    ToolFailure,
)
from .sqlite_client import SQLiteClient, close_sqlite_client, get_sqlite_client

__all__ = [
    "CompletionError",
    "DuplicateKey",
    "ExternalUnavailable",
    "ForeignKeyViolation",
    "InvalidArgument",
    "NotFound",
    "RecallError",
    "SQLiteClient",
    "ToolFailure",
    "close_sqlite_client",
    "get_sqlite_client",
]
