"""Retry policy for challenge solves: escalating timeouts, fixed delays, ledger."""

import asyncio
import logging

logger = logging.getLogger("mangagate")

MAX_RETRIES = 1  # try once and fail fast
SOLVE_TIMEOUT_BASE_MS = 30_000
SOLVE_TIMEOUT_STEP_MS = 10_000
RETRY_DELAYS = (2.0, 5.0, 10.0)  # seconds between solve attempts


def request_key(method: str, url: str) -> str:
    """Dedup key. The URL is used exactly as requested, never normalized."""
    return f"{method.upper()}:{url}"


def solve_timeout_ms(
    attempt: int,
    base_ms: int = SOLVE_TIMEOUT_BASE_MS,
    step_ms: int = SOLVE_TIMEOUT_STEP_MS,
) -> int:
    """Render timeout for a 1-based solve attempt: base + attempt * step."""
    return base_ms + attempt * step_ms


def retry_delay(attempt: int, delays: tuple[float, ...] = RETRY_DELAYS) -> float:
    """Delay after the given 1-based failed attempt.

    Walks the fixed sequence and repeats its last value once exhausted.
    """
    if not delays:
        return 0.0
    return delays[min(attempt - 1, len(delays) - 1)]


class RetryLedger:
    """Per-key attempt counters plus the in-flight solve for each key.

    Two maps, same keys:
    - attempts: solves started for the key since its last terminal outcome
    - inflight: the one running solve task, shared by every waiting caller
    """

    def __init__(self, max_retries: int = MAX_RETRIES):
        self.max_retries = max_retries
        self._attempts: dict[str, int] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def attempts(self, key: str) -> int:
        return self._attempts.get(key, 0)

    def can_retry(self, key: str) -> bool:
        return self.attempts(key) < self.max_retries

    def use_attempt(self, key: str) -> int:
        count = self.attempts(key) + 1
        self._attempts[key] = count
        return count

    def inflight(self, key: str) -> asyncio.Future | None:
        return self._inflight.get(key)

    def start(self, key: str, task: asyncio.Future) -> None:
        if key in self._inflight:
            raise RuntimeError(f"Solve already in flight for {key}")
        self._inflight[key] = task

    def finish(self, key: str, task: asyncio.Future) -> None:
        """Drop the in-flight entry if it still belongs to ``task``."""
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def reset(self, key: str) -> None:
        """Forget the attempt count after a terminal success."""
        self._attempts.pop(key, None)

    def clear(self, key: str) -> None:
        self._attempts.pop(key, None)
        self._inflight.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._attempts or key in self._inflight

    def __len__(self) -> int:
        return len(set(self._attempts) | set(self._inflight))
