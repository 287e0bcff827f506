from __future__ import annotations

from typing import Any, Dict, List, Optional


class TargetProcessError(Exception):
    """Base error for access-layer failures."""


class CompileError(TargetProcessError, ValueError):
    """Caller supplied a query shape the compiler cannot render. Never retried."""


class UnknownEntityTypeError(TargetProcessError, ValueError):
    def __init__(self, entity_type: str, *, valid_types: List[str]):
        super().__init__(
            f"Invalid entity type: '{entity_type}'. "
            f"Valid entity types are: {', '.join(valid_types)}"
        )
        self.entity_type = entity_type
        self.valid_types = valid_types


class APIError(TargetProcessError):
    def __init__(
        self,
        *,
        status_code: Optional[int],
        method: str,
        url: str,
        message: str,
        response_json: Optional[Dict[str, Any]] = None,
        response_text: Optional[str] = None,
    ):
        status = status_code if status_code is not None else "network"
        super().__init__(f"{status} {method} {url}: {message}")
        self.status_code = status_code
        self.method = method
        self.url = url
        self.message = message
        self.response_json = response_json
        self.response_text = response_text


class TransientAPIError(APIError):
    """5xx, connection failure or timeout. Retried per policy."""


class ClientError(APIError):
    """4xx response. Not retried unless the status is whitelisted."""


class TargetProcessParseError(TargetProcessError):
    def __init__(self, message: str, *, body: str = "", url: str = ""):
        super().__init__(message)
        # full body is kept so callers can attempt a repair
        self.body = body
        self.url = url


class TerminalError(TargetProcessError):
    """
    Raised by the retry executor once no further attempt will be made.
    - exhausted=True: every attempt failed transiently
    - exhausted=False: a permanent failure stopped the loop early
    """

    def __init__(
        self,
        *,
        context: str,
        attempts: int,
        last_error: BaseException,
        trace: Any = None,
    ):
        self.context = context
        self.attempts = attempts
        self.last_error = last_error
        self.trace = trace
        self.status_code: Optional[int] = getattr(last_error, "status_code", None)
        self.message: str = getattr(last_error, "message", None) or str(last_error)
        plural = "attempt" if attempts == 1 else "attempts"
        super().__init__(
            f"Failed to {context} after {attempts} {plural}: {self.message}"
        )

    @property
    def exhausted(self) -> bool:
        if self.trace is not None:
            return bool(self.trace.exhausted)
        return isinstance(self.last_error, TransientAPIError)


__all__ = [
    "TargetProcessError",
    "CompileError",
    "UnknownEntityTypeError",
    "APIError",
    "TransientAPIError",
    "ClientError",
    "TargetProcessParseError",
    "TerminalError",
]
