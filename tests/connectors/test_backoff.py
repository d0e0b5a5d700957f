"""
Tests for exponential backoff.

- Exponential growth with jitter, capped per attempt
- Retry-After respected when larger
- Seeded jitter (deterministic tests)
- Transient error classification
"""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from opsml_cli.connectors import (
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
    is_retryable_status,
    is_transient_error,
    parse_retry_after,
    sleep_backoff,
)


class TestBackoffConfig:
    """Tests for BackoffConfig."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = BackoffConfig()
        assert config.base_delay_ms == 500
        assert config.max_delay_ms == 10000
        assert config.multiplier == 2.0
        assert config.jitter_factor == 0.5
        assert config.max_retries == 3

    def test_invalid_jitter(self) -> None:
        """Jitter must be in [0, 1)."""
        with pytest.raises(ValueError, match="jitter_factor"):
            BackoffConfig(jitter_factor=1.0)

    def test_max_below_base(self) -> None:
        """max_delay_ms must not be below base_delay_ms."""
        with pytest.raises(ValueError, match="max_delay_ms"):
            BackoffConfig(base_delay_ms=1000, max_delay_ms=10)

    def test_negative_retries(self) -> None:
        """max_retries must be non-negative."""
        with pytest.raises(ValueError, match="max_retries"):
            BackoffConfig(max_retries=-1)


class TestBackoffState:
    """Tests for BackoffState."""

    def test_record_error(self) -> None:
        """Each recorded error counts one attempt."""
        state = BackoffState()
        assert state.attempt == 0
        state.record_error()
        state.record_error()
        assert state.attempt == 2

    def test_exhausted(self) -> None:
        """Exhausted once errors exceed max_retries."""
        config = BackoffConfig(max_retries=2)
        state = BackoffState()
        state.record_error()
        state.record_error()
        assert not state.exhausted(config)
        state.record_error()
        assert state.exhausted(config)

    def test_zero_retries_exhausted_after_first_error(self) -> None:
        """With max_retries=0 the first error is final."""
        state = BackoffState()
        state.record_error()
        assert state.exhausted(BackoffConfig(max_retries=0))


class TestComputeBackoffDelay:
    """Tests for compute_backoff_delay."""

    def test_no_delay_before_first_error(self) -> None:
        """Attempt 0 has no delay."""
        assert compute_backoff_delay(BackoffConfig(), BackoffState()) == 0

    def test_exponential_growth_without_jitter(self) -> None:
        """Delay doubles per attempt."""
        config = BackoffConfig(base_delay_ms=100, jitter_factor=0.0)
        delays = []
        for attempt in range(1, 5):
            delays.append(compute_backoff_delay(config, BackoffState(attempt=attempt)))
        assert delays == [100, 200, 400, 800]

    def test_capped(self) -> None:
        """Delay never exceeds max_delay_ms."""
        config = BackoffConfig(base_delay_ms=100, max_delay_ms=500, jitter_factor=0.0)
        assert compute_backoff_delay(config, BackoffState(attempt=10)) == 500

    def test_jitter_bounds(self) -> None:
        """Jitter stays within ±jitter_factor."""
        config = BackoffConfig(base_delay_ms=1000, jitter_factor=0.5)
        for _ in range(50):
            delay = compute_backoff_delay(config, BackoffState(attempt=1))
            assert 500 <= delay <= 1500

    def test_seeded_jitter_deterministic(self) -> None:
        """Same seed yields the same delays."""
        config = BackoffConfig()
        state = BackoffState(attempt=2)
        a = compute_backoff_delay(config, state, rng=random.Random(7))
        b = compute_backoff_delay(config, state, rng=random.Random(7))
        assert a == b

    def test_retry_after_respected(self) -> None:
        """Server Retry-After wins when larger."""
        config = BackoffConfig(base_delay_ms=100, jitter_factor=0.0)
        assert compute_backoff_delay(config, BackoffState(attempt=1), retry_after_ms=3000) == 3000

    def test_retry_after_smaller_ignored(self) -> None:
        """Computed delay wins when Retry-After is smaller."""
        config = BackoffConfig(base_delay_ms=1000, jitter_factor=0.0)
        assert compute_backoff_delay(config, BackoffState(attempt=1), retry_after_ms=10) == 1000


class TestSleepBackoff:
    """Tests for sleep_backoff."""

    @pytest.mark.asyncio
    async def test_sleeps_computed_delay(self) -> None:
        """Sleeps for the computed delay in seconds."""
        config = BackoffConfig(base_delay_ms=250, jitter_factor=0.0)
        with patch("opsml_cli.connectors.backoff.asyncio.sleep", new=AsyncMock()) as sleep:
            delay = await sleep_backoff(config, BackoffState(attempt=1))
        assert delay == 250
        sleep.assert_awaited_once_with(0.25)

    @pytest.mark.asyncio
    async def test_no_sleep_at_attempt_zero(self) -> None:
        """No sleep before any error."""
        with patch("opsml_cli.connectors.backoff.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await sleep_backoff(BackoffConfig(), BackoffState()) == 0
        sleep.assert_not_awaited()


class TestClassification:
    """Tests for retry classification helpers."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status: int) -> None:
        """Transient statuses are retryable."""
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 416])
    def test_non_retryable_statuses(self, status: int) -> None:
        """Client errors are not retryable."""
        assert not is_retryable_status(status)

    def test_parse_retry_after(self) -> None:
        """Retry-After seconds convert to ms."""
        assert parse_retry_after("2") == 2000
        assert parse_retry_after("0.5") == 500
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None

    def test_connection_errors_transient(self) -> None:
        """Connection failures and timeouts are transient."""
        assert is_transient_error(aiohttp.ServerDisconnectedError())
        assert is_transient_error(aiohttp.ClientPayloadError("truncated"))
        assert is_transient_error(asyncio.TimeoutError())
        assert is_transient_error(ConnectionResetError())

    def test_response_errors_by_status(self) -> None:
        """Response errors are transient only for retryable statuses."""
        info = MagicMock()
        assert is_transient_error(aiohttp.ClientResponseError(info, (), status=503))
        assert not is_transient_error(aiohttp.ClientResponseError(info, (), status=403))

    def test_other_errors_not_transient(self) -> None:
        """Programming errors are never retried."""
        assert not is_transient_error(ValueError("bad"))
