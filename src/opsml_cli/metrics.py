"""
Prometheus metrics for download sessions.

Low-cardinality only: no per-file, per-card or url labels. A one-shot CLI
has no scrape endpoint, so the registry is written to a textfile (node
exporter textfile collector format) when ``--metrics-file`` is given.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, write_to_textfile
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from pathlib import Path


class DownloadMetrics:
    """
    Counters and gauges for one CLI invocation.

    Metric names:
    - opsml_cli_download_bytes_total      bytes written to staging
    - opsml_cli_files_verified_total      entries that passed integrity checks
    - opsml_cli_files_failed_total        entries that ended failed
    - opsml_cli_fetch_retries_total       per-entry fetch retries
    - opsml_cli_fetch_resumes_total       byte-range resumes attempted
    - opsml_cli_session_duration_seconds  wall time of the last session
    - opsml_cli_session_success           1 if the last session materialized
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self.bytes_downloaded = Counter(
            "opsml_cli_download_bytes",
            "Bytes written to the staging area",
            registry=self._registry,
        )
        self.files_verified = Counter(
            "opsml_cli_files_verified",
            "Manifest entries that passed size and checksum verification",
            registry=self._registry,
        )
        self.files_failed = Counter(
            "opsml_cli_files_failed",
            "Manifest entries that failed after retries",
            registry=self._registry,
        )
        self.retries = Counter(
            "opsml_cli_fetch_retries",
            "Object fetch retries",
            registry=self._registry,
        )
        self.resumes = Counter(
            "opsml_cli_fetch_resumes",
            "Byte-range resume attempts",
            registry=self._registry,
        )
        self.session_duration = Gauge(
            "opsml_cli_session_duration_seconds",
            "Wall time of the last download session",
            registry=self._registry,
        )
        self.session_success = Gauge(
            "opsml_cli_session_success",
            "1 if the last download session materialized, else 0",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def write_textfile(self, path: Path) -> None:
        """Write all metrics in Prometheus text format (atomic)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self._registry)
