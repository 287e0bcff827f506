"""targetprocess_mcp package exports."""

from .core import (
    ClientError,
    CompileError,
    Query,
    RetryPolicy,
    TargetProcessClient,
    TargetProcessError,
    TerminalError,
    TransientAPIError,
    UnknownEntityTypeError,
)

__all__ = [
    "TargetProcessClient",
    "RetryPolicy",
    "Query",
    "TargetProcessError",
    "CompileError",
    "TransientAPIError",
    "ClientError",
    "TerminalError",
    "UnknownEntityTypeError",
]
