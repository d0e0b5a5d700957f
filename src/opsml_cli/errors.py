"""
Error taxonomy for opsml-cli.

Every failure the download pipeline reports is one of these types. Each class
carries a stable process exit code; the mapping is part of the CLI contract
and must not change between releases.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class OpsmlCliError(Exception):
    """Base exception for opsml-cli failures."""

    exit_code: int = 1


class ConfigError(OpsmlCliError):
    """Required configuration is missing or invalid."""

    exit_code = 2


class InvalidQueryError(OpsmlCliError):
    """User query is malformed. Never retried."""

    exit_code = 3


class CardNotFoundError(OpsmlCliError):
    """Registry reported zero matching cards."""

    exit_code = 4


class OnnxNotAvailableError(OpsmlCliError):
    """ONNX (or quantized ONNX) requested on a card registered without one."""

    exit_code = 5


class RegistryUnavailableError(OpsmlCliError):
    """Registry could not be reached after bounded retries."""

    exit_code = 6

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class EntryFailure:
    """Why a single manifest entry failed."""

    path: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason}"


class PartialDownloadError(OpsmlCliError):
    """One or more manifest entries failed after retries."""

    exit_code = 7

    def __init__(self, failures: Sequence[EntryFailure]) -> None:
        self.failures = list(failures)
        lines = "\n".join(f"  - {f}" for f in self.failures)
        super().__init__(f"{len(self.failures)} file(s) failed to download:\n{lines}")

    @property
    def failed_paths(self) -> list[str]:
        return [f.path for f in self.failures]


class CorruptArtifactError(OpsmlCliError):
    """Staged content does not match the expected size or checksum."""

    exit_code = 8

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class MaterializationFailedError(OpsmlCliError):
    """Atomic promotion of the staging area failed. Destination unchanged."""

    exit_code = 9

    def __init__(self, message: str, staging_dir: str | None = None) -> None:
        super().__init__(message)
        self.staging_dir = staging_dir


class DownloadTimeoutError(OpsmlCliError):
    """Session deadline expired. Staged partial files are kept for resume."""

    exit_code = 10

    def __init__(self, deadline_s: float, staging_dir: str | None = None) -> None:
        message = f"Download exceeded deadline of {deadline_s:g}s"
        if staging_dir:
            message += f"; partial files kept in {staging_dir} (retry with --staging-dir)"
        super().__init__(message)
        self.deadline_s = deadline_s
        self.staging_dir = staging_dir


class InvalidManifestError(OpsmlCliError):
    """Registry returned file listings that cannot be mapped safely."""

    exit_code = 11


class RegistryRequestError(OpsmlCliError):
    """Registry rejected a request (non-retryable 4xx, e.g. auth failure)."""

    exit_code = 12

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
