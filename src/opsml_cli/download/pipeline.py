"""
End-to-end download orchestration.

    Query -> QueryResolver -> ManifestBuilder -> DownloadEngine -> Materializer

Resolution and manifest building run sequentially before the worker pool
is engaged; materialization runs after the pool drains and only when every
entry verified. The whole session runs under one optional deadline.

Staging lifecycle:
- success: staging directory becomes the destination
- partial failure: staging directory removed
- timeout: staging directory kept so a retry with ``--staging-dir`` resumes
- materialization failure: staging directory kept for diagnosis

A ``--staging-dir`` is accepted only if it does not exist yet or carries the
staging marker, so user directories are never pruned or removed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from opsml_cli.connectors.backoff import BackoffConfig
from opsml_cli.connectors.registry_client import registry_session
from opsml_cli.download.engine import DownloadEngine
from opsml_cli.download.materializer import (
    Materializer,
    check_staging_dir,
    create_staging_dir,
    discard_staging_dir,
    staging_dir_for,
)
from opsml_cli.download.resolver import QueryResolver
from opsml_cli.errors import DownloadTimeoutError, PartialDownloadError
from opsml_cli.registry.manifest import ManifestBuilder

if TYPE_CHECKING:
    from pathlib import Path

    from opsml_cli.config import ClientConfig
    from opsml_cli.connectors.registry_client import OpsmlRestClient
    from opsml_cli.contracts.cards import Card
    from opsml_cli.download.resolver import Query
    from opsml_cli.metrics import DownloadMetrics
    from opsml_cli.registry.manifest import DownloadManifest

logger = logging.getLogger(__name__)

METADATA_FILENAME = "model-metadata.json"


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of a successful model download."""

    card: Card
    manifest: DownloadManifest
    destination: Path
    duration_s: float


async def download_model(
    config: ClientConfig,
    query: Query,
    write_dir: Path,
    *,
    staging_dir: Path | None = None,
    metrics: DownloadMetrics | None = None,
    client: OpsmlRestClient | None = None,
) -> DownloadResult:
    """
    Resolve a model card and materialize its files into ``write_dir``.

    Args:
        config: Client configuration (workers, retries, deadline).
        query: Card query and download modifiers.
        write_dir: Destination directory, replaced atomically on success.
        staging_dir: Reuse a staging directory from a timed-out run.
        metrics: Optional prometheus metrics.
        client: Registry client to use (default: one per call).

    Raises:
        InvalidQueryError: Query malformed or ``staging_dir`` not a staging
            directory (before any network call).
        CardNotFoundError, OnnxNotAvailableError, InvalidManifestError,
        RegistryUnavailableError, RegistryRequestError: Resolution failures.
        PartialDownloadError: One or more files failed; destination unchanged.
        DownloadTimeoutError: Deadline expired; partial files kept.
        MaterializationFailedError: Promotion failed; destination holds complete content.
    """
    query.validate()
    if staging_dir is not None:
        check_staging_dir(staging_dir)
    started = time.monotonic()
    if metrics:
        metrics.session_success.set(0)

    staging = staging_dir or staging_dir_for(write_dir)
    deadline = asyncio.timeout(config.deadline_s)
    try:
        async with deadline, registry_session(config, client) as registry:
            card = await QueryResolver(registry).resolve(query)
            manifest = await ManifestBuilder(registry).build(card, query.modifiers)

            engine = DownloadEngine(
                registry,
                max_workers=config.max_workers,
                backoff_config=BackoffConfig(max_retries=config.max_retries),
                metrics=metrics,
            )
            create_staging_dir(staging)
            session = await engine.fetch(manifest, staging)
    except TimeoutError as e:
        if not deadline.expired():
            raise
        assert config.deadline_s is not None
        kept = str(staging) if staging.exists() else None
        logger.error(
            "Download deadline expired",
            extra={"deadline_s": config.deadline_s, "staging_dir": kept},
        )
        raise DownloadTimeoutError(config.deadline_s, staging_dir=kept) from e
    finally:
        if metrics:
            metrics.session_duration.set(time.monotonic() - started)

    try:
        session.raise_for_failures()
    except PartialDownloadError:
        discard_staging_dir(session.staging_dir)
        raise

    Materializer().materialize(session, write_dir)

    duration = time.monotonic() - started
    if metrics:
        metrics.session_duration.set(duration)
        metrics.session_success.set(1)
    logger.info(
        "Model downloaded",
        extra={
            "card": card.name,
            "version": card.version,
            "files": len(manifest.entries),
            "destination": str(write_dir),
            "duration_s": round(duration, 3),
        },
    )
    return DownloadResult(card=card, manifest=manifest, destination=write_dir, duration_s=duration)


async def download_model_metadata(
    config: ClientConfig,
    query: Query,
    write_dir: Path,
    *,
    client: OpsmlRestClient | None = None,
) -> Path:
    """
    Resolve a model card and write its metadata record as JSON.

    Returns:
        Path of the written ``model-metadata.json``.
    """
    query.validate()
    deadline = asyncio.timeout(config.deadline_s)
    try:
        async with deadline, registry_session(config, client) as registry:
            card = await QueryResolver(registry).resolve(query)
    except TimeoutError as e:
        if not deadline.expired():
            raise
        assert config.deadline_s is not None
        raise DownloadTimeoutError(config.deadline_s) from e

    path = write_dir / METADATA_FILENAME
    write_atomic(path, card.metadata.to_json())
    logger.info("Model metadata written", extra={"card": card.name, "version": card.version, "path": str(path)})
    return path


def write_atomic(path: Path, data: bytes) -> None:
    """Write a file via temp file + rename so readers never see partial content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
