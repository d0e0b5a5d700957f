"""
Exponential backoff for registry and object-store requests.

- Transient failures (connection errors, timeouts, 408/429/5xx) are retried
- Exponential backoff with jitter, capped per attempt
- Retry-After from the server is respected when larger
- Seeded jitter available for deterministic tests
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from dataclasses import dataclass

import aiohttp

# Statuses worth retrying: request timeout, rate limit, server side errors
RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""

    base_delay_ms: int = 500
    max_delay_ms: int = 10000
    multiplier: float = 2.0
    jitter_factor: float = 0.5  # 0.5 = ±50% jitter
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class BackoffState:
    """Attempt counter for one request or one file."""

    attempt: int = 0

    def record_error(self) -> None:
        self.attempt += 1

    def exhausted(self, config: BackoffConfig) -> bool:
        """True once more errors were recorded than retries allowed."""
        return self.attempt > config.max_retries


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Delay before the next attempt, in milliseconds.

    ``base * multiplier ** (attempt - 1)``, scaled by a uniform jitter in
    ``[1 - jitter_factor, 1 + jitter_factor]`` and capped at ``max_delay_ms``.
    A positive Retry-After wins when it is longer.

    Args:
        config: Backoff configuration.
        state: Attempts so far (0 means no delay).
        retry_after_ms: Server-provided delay from a Retry-After header.
        rng: Seeded Random for deterministic jitter in tests.
    """
    if state.attempt == 0:
        return 0

    spread = config.jitter_factor
    jitter = (rng or random).uniform(1.0 - spread, 1.0 + spread)
    delay = min(config.base_delay_ms * config.multiplier ** (state.attempt - 1) * jitter, config.max_delay_ms)
    if retry_after_ms:
        delay = max(delay, retry_after_ms)
    return int(delay)


async def sleep_backoff(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
) -> int:
    """Sleep for the computed backoff delay. Returns the delay used (ms)."""
    delay_ms = compute_backoff_delay(config, state, retry_after_ms)
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)
    return delay_ms


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds form) into milliseconds."""
    if not value:
        return None
    with contextlib.suppress(ValueError):
        return max(0, int(float(value) * 1000))
    return None


def is_retryable_status(status: int) -> bool:
    """Check if an HTTP status indicates a transient failure."""
    return status in RETRYABLE_STATUSES


def is_transient_error(error: BaseException) -> bool:
    """Check if an exception raised by a request is worth retrying.

    Connection resets, payload truncation and socket timeouts are transient.
    Response errors are transient only for retryable statuses.
    """
    if isinstance(error, aiohttp.ClientResponseError):
        return is_retryable_status(error.status)
    return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError))
