from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    TypeVar,
)

import httpx

from .errors import APIError, CompileError, TerminalError, TransientAPIError

T = TypeVar("T")

# Permanent regardless of any whitelist.
NEVER_RETRY_STATUSES = frozenset({400, 401})

OUTCOME_SUCCESS = "success"
OUTCOME_RETRYABLE = "retryable"
OUTCOME_FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3  # first attempt included
    base_delay: float = 1.0  # 1.0, 2.0, 4.0...
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter_ratio: float = 0.1
    retry_statuses: frozenset[int] = frozenset()  # extra 4xx to retry, e.g. 429
    retryable_status_predicate: Optional[Callable[[int], bool]] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def is_retryable_status(self, status: int) -> bool:
        if status in NEVER_RETRY_STATUSES:
            return False
        if self.retryable_status_predicate is not None:
            return bool(self.retryable_status_predicate(status))
        return status >= 500 or status in self.retry_statuses

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before 1-indexed `attempt` (only meaningful for attempt >= 2)."""
        if attempt < 2:
            return 0.0
        raw = min(self.max_delay, self.base_delay * self.backoff_factor ** (attempt - 2))
        if not self.jitter_ratio:
            return raw
        spread = (rng or random).uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, raw * (1 + spread))


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    outcome: str
    status: Optional[int] = None
    error: Optional[str] = None
    delay: float = 0.0  # sleep scheduled after this attempt


@dataclass
class AttemptTrace:
    records: List[AttemptRecord] = field(default_factory=list)

    def add(self, record: AttemptRecord) -> None:
        self.records.append(record)

    @property
    def attempts(self) -> int:
        return len(self.records)

    @property
    def succeeded(self) -> bool:
        return bool(self.records) and self.records[-1].outcome == OUTCOME_SUCCESS

    @property
    def exhausted(self) -> bool:
        return bool(self.records) and self.records[-1].outcome == OUTCOME_RETRYABLE


def classify_failure(exc: BaseException, policy: RetryPolicy) -> bool:
    """Return True when `exc` is worth another attempt under `policy`."""
    if isinstance(exc, APIError):
        if exc.status_code is None:
            return isinstance(exc, TransientAPIError)
        return policy.is_retryable_status(exc.status_code)
    # Raw transport failures from callers that bypass Transport.
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, asyncio.TimeoutError):
        return True
    return False


class RetryExecutor:
    """
    Runs a request function until it succeeds, fails permanently, or the
    attempt budget is spent.

    Idle -> Attempting -> Success | EvaluateFailure
    EvaluateFailure -> Idle (sleep, retry) | Failed (TerminalError)

    Holds configuration only; every execute() call starts from scratch.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self.log = logger or logging.getLogger("targetprocess_mcp.retry")

    async def execute(
        self,
        request_fn: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        *,
        context: str = "request",
        trace: Optional[AttemptTrace] = None,
    ) -> T:
        policy = policy or self.policy
        trace = trace if trace is not None else AttemptTrace()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await request_fn()
            except CompileError:
                # caller bug, not a request outcome
                raise
            except Exception as exc:  # noqa: BLE001 - classified below
                retryable = classify_failure(exc, policy)
                status = getattr(exc, "status_code", None)
                has_budget = attempt < policy.max_attempts
                delay = policy.delay_for(attempt + 1, self._rng) if has_budget else 0.0

                trace.add(
                    AttemptRecord(
                        attempt=attempt,
                        outcome=OUTCOME_RETRYABLE if retryable else OUTCOME_FATAL,
                        status=status,
                        error=str(exc),
                        delay=delay if retryable else 0.0,
                    )
                )
                self.log.debug(
                    "tp.attempt",
                    extra={
                        "attempt": attempt,
                        "status": status,
                        "endpoint": context,
                    },
                )

                if not retryable or not has_budget:
                    raise TerminalError(
                        context=context,
                        attempts=attempt,
                        last_error=exc,
                        trace=trace,
                    ) from exc

                self.log.warning(
                    "tp.retry",
                    extra={
                        "attempt": attempt,
                        "status": status,
                        "endpoint": context,
                        "delay_ms": int(delay * 1000),
                    },
                )
                await self._sleep(delay)
                continue

            trace.add(AttemptRecord(attempt=attempt, outcome=OUTCOME_SUCCESS))
            return result


__all__ = [
    "RetryPolicy",
    "RetryExecutor",
    "AttemptRecord",
    "AttemptTrace",
    "classify_failure",
    "NEVER_RETRY_STATUSES",
]
