"""
Rate-limit detection and backoff.

Providers signal throttling in different ways (HTTP 429, gRPC RESOURCE_EXHAUSTED,
"quota exceeded" prose). String inspection is unavoidable for some of them, so
it is isolated here: is_rate_limited() is the only place that sniffs messages.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from tenacity import RetryCallState
from tenacity.wait import wait_base, wait_exponential, wait_random

from model_orchestrator.config import RetryConfig, get_settings

# A bare 429 in a message counts only as a whole number ("prompt is 14290 tokens" does not).
_RATE_LIMIT_CODE = re.compile(r"\b429\b")

_RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "rate-limit",
    "resource exhausted",
    "resource_exhausted",
    "quota",
    "too many requests",
)

_RETRY_AFTER_PATTERNS = (
    re.compile(r"retry[- _]?after\D{0,10}(\d+(?:\.\d+)?)", re.I),
    re.compile(r"retry in\s+(\d+(?:\.\d+)?)", re.I),
    re.compile(r"retry_?delay\D{0,10}(\d+(?:\.\d+)?)", re.I),
    re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*s", re.I),
)


def _status_code(error: Any) -> Optional[int]:
    for attr in ("status_code", "status", "code"):
        val = getattr(error, attr, None)
        if isinstance(val, int):
            return val
    response = getattr(error, "response", None)
    val = getattr(response, "status_code", None)
    return val if isinstance(val, int) else None


def is_rate_limited(error: Any) -> bool:
    """True when an error (exception, status-bearing object or message) signals throttling."""
    if error is None:
        return False
    status = None if isinstance(error, str) else _status_code(error)
    if status == 429:
        return True
    msg = str(error).lower()
    if any(marker in msg for marker in _RATE_LIMIT_MARKERS):
        return True
    # Another explicit status outranks a 429 quoted in the message.
    return status is None and bool(_RATE_LIMIT_CODE.search(msg))


def parse_retry_after(error: Any) -> Optional[float]:
    """Extract a provider retry-after hint in seconds, or None when absent."""
    if error is None:
        return None
    if not isinstance(error, str):
        for attr in ("retry_after", "retry_delay"):
            val = getattr(error, attr, None)
            if isinstance(val, (int, float)) and not isinstance(val, bool):
                return float(val)
        headers = getattr(getattr(error, "response", None), "headers", None) or {}
        try:
            raw = headers.get("retry-after") or headers.get("Retry-After")
        except AttributeError:
            raw = None
        if raw:
            try:
                return float(raw)
            except (TypeError, ValueError):
                pass
    text = str(error)
    for pattern in _RETRY_AFTER_PATTERNS:
        m = pattern.search(text)
        if m:
            return float(m.group(1))
    return None


class BackoffPolicy:
    """Bounded retry budget for rate-limited candidates."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 10.0,
        retry_after_cap: float = 60.0,
        jitter: bool = False,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, base_delay)
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.retry_after_cap = retry_after_cap
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: Optional[RetryConfig] = None) -> "BackoffPolicy":
        cfg = config or get_settings().retry
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay,
            multiplier=cfg.multiplier,
            max_delay=cfg.max_delay,
            retry_after_cap=cfg.retry_after_cap,
            jitter=cfg.jitter,
        )

    def capped_retry_after(self, retry_after: Optional[float]) -> Optional[float]:
        """A provider hint in seconds, bounded by retry_after_cap; None when absent."""
        if retry_after is None or retry_after < 0:
            return None
        return min(float(retry_after), self.retry_after_cap)

    def exponential_wait(self) -> wait_base:
        """tenacity wait used when the provider gave no hint."""
        wait: wait_base = wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)
        if self.jitter:
            wait = wait + wait_random(0, self.base_delay * 0.25)
        return wait


class wait_rate_limit(wait_base):
    """Honour the failure's retry-after hint (capped), else back off exponentially."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy
        self._exponential = policy.exponential_wait()

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        result = outcome.result() if outcome is not None and not outcome.failed else None
        hint = self.policy.capped_retry_after(getattr(result, "retry_after", None))
        if hint is not None:
            return hint
        return self._exponential(retry_state)
