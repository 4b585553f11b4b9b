"""Retry delay math for AI provider calls.

Everything here is pure: callers pass the jitter fraction in, so the delays can
be asserted without waiting on a clock.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    FAILURE = "failure"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: float = 3000.0
    factor: float = 1.8
    max_jitter_ms: float = 1000.0
    cap_ms: float = 30000.0
    rate_limit_base_ms: float = 8000.0
    rate_limit_cap_ms: float = 60000.0
    retry_after_cap_s: float = 60.0
    provider_switch_ms: float = 6000.0

    def compute_delay(
        self,
        attempt: int,
        error_kind: ErrorKind = ErrorKind.FAILURE,
        *,
        jitter: float = 0.0,
        retry_after: Optional[float] = None,
    ) -> float:
        """Milliseconds to wait before firing ``attempt`` (zero based).

        ``error_kind`` describes why the previous attempt failed. For rate limits
        ``attempt`` is the index of the attempt that was throttled.
        """
        if error_kind is ErrorKind.RATE_LIMITED:
            if retry_after is not None and retry_after >= 0:
                return min(retry_after, self.retry_after_cap_s) * 1000.0
            return min(self.rate_limit_base_ms * (2 ** attempt), self.rate_limit_cap_ms)

        if attempt <= 0:
            return 0.0
        jitter = min(max(jitter, 0.0), 1.0)
        delay = self.base_ms * (self.factor ** (attempt - 1)) + jitter * self.max_jitter_ms
        return min(delay, self.cap_ms)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header. HTTP-date values are ignored."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


DEFAULT_POLICY = BackoffPolicy()
