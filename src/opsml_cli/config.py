"""
Client configuration.

Values come from the environment (``ClientConfig.from_env``) and may be
overridden by CLI flags. Validation happens at construction time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from opsml_cli.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

TRACKING_URI_ENV = "OPSML_TRACKING_URI"
TOKEN_ENV = "OPSML_TOKEN"

# Upper bound on concurrent object fetches, independent of CPU count
MAX_WORKERS_CAP = 8


def default_workers() -> int:
    """Worker pool size proportional to available parallelism, capped."""
    return max(1, min(4, os.cpu_count() or 1))


@dataclass(frozen=True)
class ClientConfig:
    """Registry connection and download settings."""

    tracking_uri: str
    token: str | None = None
    request_timeout_s: float = 30.0
    max_workers: int = 4
    max_retries: int = 3
    deadline_s: float | None = None

    def __post_init__(self) -> None:
        if not self.tracking_uri:
            raise ValueError("tracking_uri must not be empty")
        if not self.tracking_uri.startswith(("http://", "https://")):
            raise ValueError(f"tracking_uri must be an http(s) URL, got {self.tracking_uri!r}")
        if self.tracking_uri.endswith("/"):
            object.__setattr__(self, "tracking_uri", self.tracking_uri.rstrip("/"))
        if self.request_timeout_s <= 0:
            raise ValueError(f"request_timeout_s must be > 0, got {self.request_timeout_s}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_workers > MAX_WORKERS_CAP:
            logger.warning(
                "Worker count capped",
                extra={"requested": self.max_workers, "workers": MAX_WORKERS_CAP},
            )
            object.__setattr__(self, "max_workers", MAX_WORKERS_CAP)
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.deadline_s is not None and self.deadline_s <= 0:
            raise ValueError(f"deadline_s must be > 0, got {self.deadline_s}")

    def __repr__(self) -> str:
        # Keep the credential out of tracebacks and debug output
        token = "<redacted>" if self.token else None
        return (
            f"ClientConfig(tracking_uri={self.tracking_uri!r}, token={token}, "
            f"request_timeout_s={self.request_timeout_s}, max_workers={self.max_workers}, "
            f"max_retries={self.max_retries}, deadline_s={self.deadline_s})"
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> ClientConfig:
        """Build config from environment variables.

        Args:
            environ: Mapping to read from (default ``os.environ``).
            **overrides: Explicit values (e.g. from CLI flags); ``None`` is ignored.

        Raises:
            ConfigError: If the tracking URI is missing or a value is invalid.
        """
        env = os.environ if environ is None else environ

        tracking_uri = env.get(TRACKING_URI_ENV, "")
        if not tracking_uri and not overrides.get("tracking_uri"):
            raise ConfigError(f"No {TRACKING_URI_ENV} found. Check your environment")

        values: dict[str, Any] = {
            "tracking_uri": tracking_uri,
            "token": env.get(TOKEN_ENV) or None,
            "max_workers": default_workers(),
        }
        try:
            if "OPSML_REQUEST_TIMEOUT_S" in env:
                values["request_timeout_s"] = float(env["OPSML_REQUEST_TIMEOUT_S"])
            if "OPSML_MAX_WORKERS" in env:
                values["max_workers"] = int(env["OPSML_MAX_WORKERS"])
            if "OPSML_MAX_RETRIES" in env:
                values["max_retries"] = int(env["OPSML_MAX_RETRIES"])
            if env.get("OPSML_DEADLINE_S"):
                values["deadline_s"] = float(env["OPSML_DEADLINE_S"])
        except ValueError as e:
            raise ConfigError(f"Invalid numeric environment value: {e}") from e

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigError(str(e)) from e
