"""
Retry Policy for Roadmap Cascade

Classifies SessionExecutor failures and decides whether to retry them.

- Transient failures (timeouts, rate limits, failures marked retryable) are
  retried with exponential backoff up to the configured attempt count.
- Structural failures (malformed output, missing files, explicit blocks) are
  never retried; the item is blocked with the reason attached.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from .errors import ExecutorError
from .models import Outcome, utc_now


class ErrorType(Enum):
    """Types of session failures."""
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    MALFORMED_OUTPUT = "malformed_output"
    STRUCTURAL = "structural"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in (ErrorType.TIMEOUT, ErrorType.RATE_LIMIT, ErrorType.TRANSIENT)


@dataclass
class FailureRecord:
    """Record of a single failed attempt."""
    item_id: str
    attempt: int
    error_type: ErrorType
    error_message: str
    timestamp: str = field(default_factory=utc_now)

    @property
    def transient(self) -> bool:
        return self.error_type.is_transient

    def describe(self) -> str:
        return f"attempt {self.attempt}: {self.error_type.value}: {self.error_message}"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    retry_attempts: int = 3
    exponential_backoff: bool = True
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0

    def __post_init__(self):
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        """Total attempts: the first call plus ``retry_attempts`` retries."""
        return self.retry_attempts + 1


class RetryPolicy:
    """
    Failure classification and backoff.

    Keeps the failures seen for each item during the current run so a
    caller can report every attempt once the item settles.
    """

    RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "too many requests", "429", "overloaded")
    TIMEOUT_PATTERNS = ("timeout", "timed out", "deadline exceeded")

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()
        self._failures: dict[str, list[FailureRecord]] = {}

    def classify_exception(self, error: BaseException) -> ErrorType:
        """Classify an exception raised by a session call."""
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorType.TIMEOUT
        if isinstance(error, ExecutorError):
            if not error.transient:
                text = str(error).lower()
                return ErrorType.MALFORMED_OUTPUT if "malformed" in text else ErrorType.STRUCTURAL
            return self._classify_message(str(error), default=ErrorType.TRANSIENT)
        return ErrorType.STRUCTURAL

    def classify_result(self, status: Outcome, error: str | None, retryable: bool) -> ErrorType:
        """Classify a non-success SessionResult."""
        if status == Outcome.BLOCKED:
            return ErrorType.BLOCKED
        if retryable:
            return self._classify_message(error or "", default=ErrorType.TRANSIENT)
        return ErrorType.STRUCTURAL

    def _classify_message(self, message: str, default: ErrorType) -> ErrorType:
        lowered = message.lower()
        if any(p in lowered for p in self.RATE_LIMIT_PATTERNS):
            return ErrorType.RATE_LIMIT
        if any(p in lowered for p in self.TIMEOUT_PATTERNS):
            return ErrorType.TIMEOUT
        return default

    def record_failure(self, item_id: str, attempt: int, error_type: ErrorType, message: str) -> FailureRecord:
        record = FailureRecord(item_id=item_id, attempt=attempt, error_type=error_type, error_message=message)
        self._failures.setdefault(item_id, []).append(record)
        return record

    def failures(self, item_id: str) -> list[FailureRecord]:
        return list(self._failures.get(item_id, []))

    def clear(self, item_id: str) -> None:
        self._failures.pop(item_id, None)

    def should_retry(self, error_type: ErrorType, attempt: int) -> bool:
        """Check whether a failed ``attempt`` (1-based) may be retried."""
        return error_type.is_transient and attempt < self.config.max_attempts

    def get_retry_delay(self, attempt: int) -> float:
        """
        Backoff before the retry that follows ``attempt`` (1-based).

        Returns:
            Delay in seconds
        """
        base = self.config.base_delay_seconds
        if not self.config.exponential_backoff:
            return min(base, self.config.max_delay_seconds)
        return min(base * (2 ** (max(attempt, 1) - 1)), self.config.max_delay_seconds)
