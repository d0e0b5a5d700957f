"""
Concurrent retrieval of manifest entries into a staging directory.

Entries are consumed from a work queue by a fixed-size pool of worker tasks.
Each entry is fetched, retried and verified independently; a failed entry
never aborts its siblings. The pool drains completely before the session is
handed back, so callers see every entry either verified or failed.

Resume: bytes already staged for an entry are kept and only the remainder is
requested with ``Range: bytes=N-``. A resume is attempted once per entry.
A server that ignores the range (200) has sent the whole object, which is
written from the start. A rejected range (416) or a resumed file that fails
verification falls back to a full fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import aiohttp

from opsml_cli.connectors.backoff import (
    BackoffConfig,
    BackoffState,
    is_transient_error,
    sleep_backoff,
)
from opsml_cli.download.verifier import IntegrityVerifier
from opsml_cli.errors import (
    CorruptArtifactError,
    EntryFailure,
    OpsmlCliError,
    PartialDownloadError,
)

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager
    from pathlib import Path

    from opsml_cli.connectors.registry_client import ObjectStream
    from opsml_cli.metrics import DownloadMetrics
    from opsml_cli.registry.manifest import DownloadManifest, FileEntry

logger = logging.getLogger(__name__)


class ObjectSource(Protocol):
    """Object retrieval calls the engine depends on."""

    async def presigned_url(self, uri: str) -> str: ...

    def open_object(self, url: str, offset: int = 0) -> AbstractAsyncContextManager[ObjectStream]: ...


class EntryStatus(str, Enum):
    """Per-entry state within a session."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    VERIFIED = "verified"
    FAILED = "failed"


class _ResumeRejected(Exception):
    """Server answered a range request with unusable content."""


@dataclass
class DownloadSession:
    """State of one download invocation.

    Attributes:
        manifest: Entries to fetch.
        staging_dir: Private directory the entries are written into.
        statuses: Status keyed by local relative path.
        failures: Failed entries with reasons, in manifest order.
        started_at: Monotonic start time.
    """

    manifest: DownloadManifest
    staging_dir: Path
    statuses: dict[str, EntryStatus] = field(default_factory=dict)
    failures: list[EntryFailure] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        for entry in self.manifest.entries:
            self.statuses.setdefault(entry.local_relative_path, EntryStatus.PENDING)

    def staged_path(self, entry: FileEntry) -> Path:
        return self.staging_dir.joinpath(*entry.local_relative_path.split("/"))

    @property
    def all_verified(self) -> bool:
        return all(s == EntryStatus.VERIFIED for s in self.statuses.values())

    @property
    def failed_paths(self) -> list[str]:
        return [f.path for f in self.failures]

    def status_counts(self) -> dict[str, int]:
        """Count entries per status."""
        counts = {s.value: 0 for s in EntryStatus}
        for status in self.statuses.values():
            counts[status.value] += 1
        return counts

    def raise_for_failures(self) -> None:
        """
        Raise if any entry did not verify.

        Raises:
            PartialDownloadError: Naming every failed entry.
        """
        if self.all_verified:
            return
        failures = list(self.failures)
        reported = {f.path for f in failures}
        for path, status in self.statuses.items():
            if status != EntryStatus.VERIFIED and path not in reported:
                failures.append(EntryFailure(path, f"entry ended {status.value}"))
        raise PartialDownloadError(sorted(failures, key=lambda f: self.manifest.local_paths.index(f.path)))


class DownloadEngine:
    """
    Fetches manifest entries with bounded concurrency.

    Each worker takes the next entry from the queue, streams it to the
    staging directory, verifies it and records the outcome. Transient
    errors (timeouts, 5xx, connection resets) are retried with exponential
    backoff up to ``backoff_config.max_retries`` times per entry.
    """

    def __init__(
        self,
        source: ObjectSource,
        *,
        max_workers: int = 4,
        backoff_config: BackoffConfig | None = None,
        verifier: IntegrityVerifier | None = None,
        metrics: DownloadMetrics | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            source: Presigned url and object retrieval calls.
            max_workers: Worker pool size.
            backoff_config: Per-entry retry policy.
            verifier: Integrity verifier (default: size + checksum).
            metrics: Optional prometheus metrics.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._source = source
        self._max_workers = max_workers
        self._backoff_config = backoff_config or BackoffConfig()
        self._verifier = verifier or IntegrityVerifier()
        self._metrics = metrics

    async def fetch(self, manifest: DownloadManifest, staging_dir: Path) -> DownloadSession:
        """
        Fetch every manifest entry into ``staging_dir``.

        Returns once every entry is verified or failed. Cancellation (e.g. a
        session deadline) aborts in-flight fetches and leaves staged bytes
        on disk.
        """
        staging_dir.mkdir(parents=True, exist_ok=True)
        session = DownloadSession(manifest=manifest, staging_dir=staging_dir)

        queue: asyncio.Queue[FileEntry] = asyncio.Queue()
        for entry in manifest.entries:
            queue.put_nowait(entry)

        pool_size = max(1, min(self._max_workers, len(manifest.entries)))
        logger.info(
            "Starting download",
            extra={
                "files": len(manifest.entries),
                "bytes": manifest.total_bytes,
                "workers": pool_size,
                "staging_dir": str(staging_dir),
            },
        )

        workers = [asyncio.create_task(self._worker(session, queue)) for _ in range(pool_size)]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()

        # Keep failures in manifest order regardless of completion order
        order = {path: i for i, path in enumerate(manifest.local_paths)}
        session.failures.sort(key=lambda f: order.get(f.path, len(order)))

        logger.info(
            "Download finished",
            extra={
                "verified": session.status_counts()[EntryStatus.VERIFIED.value],
                "failed": len(session.failures),
                "duration_s": round(time.monotonic() - session.started_at, 3),
            },
        )
        return session

    async def _worker(self, session: DownloadSession, queue: asyncio.Queue[FileEntry]) -> None:
        while True:
            try:
                entry = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(session, entry)
            finally:
                queue.task_done()

    async def _process(self, session: DownloadSession, entry: FileEntry) -> None:
        path = entry.local_relative_path
        session.statuses[path] = EntryStatus.IN_PROGRESS
        try:
            await self.fetch_entry(entry, session.staged_path(entry))
        except (OpsmlCliError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            session.statuses[path] = EntryStatus.FAILED
            reason = e.reason if isinstance(e, CorruptArtifactError) else _describe(e)
            session.failures.append(EntryFailure(path, reason))
            if self._metrics:
                self._metrics.files_failed.inc()
            logger.error("File failed", extra={"file": path, "error": reason})
            return

        session.statuses[path] = EntryStatus.VERIFIED
        if self._metrics:
            self._metrics.files_verified.inc()

    async def fetch_entry(self, entry: FileEntry, target: Path) -> None:
        """
        Fetch and verify a single entry at ``target``.

        Raises:
            CorruptArtifactError: Content does not verify after a full fetch.
            OpsmlCliError: Registry refused the presigned url.
            aiohttp.ClientError: Non-transient HTTP failure or retries exhausted.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        state = BackoffState()
        resume_available = True

        # Already complete from an earlier attempt on this staging dir
        if target.is_file() and target.stat().st_size == entry.expected_size:
            try:
                await asyncio.to_thread(self._verifier.verify, entry, target)
                logger.info("File already staged", extra={"file": entry.local_relative_path})
                return
            except CorruptArtifactError:
                target.unlink()

        while True:
            offset = _staged_bytes(target)
            if offset >= entry.expected_size or not resume_available:
                offset = 0
            if offset > 0:
                resume_available = False

            written_from = offset
            try:
                written_from = await self._download(entry, target, offset)
                await asyncio.to_thread(self._verifier.verify, entry, target)
                return
            except _ResumeRejected as e:
                logger.info(
                    "Resume rejected, fetching whole file",
                    extra={"file": entry.local_relative_path, "reason": str(e)},
                )
                continue
            except CorruptArtifactError:
                if written_from == 0:
                    raise
                logger.warning(
                    "Resumed file failed verification, fetching whole file",
                    extra={"file": entry.local_relative_path},
                )
                _truncate(target)
                continue
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                if not is_transient_error(e):
                    raise
                state.record_error()
                if state.exhausted(self._backoff_config):
                    logger.error(
                        "Retries exhausted",
                        extra={"file": entry.local_relative_path, "attempts": state.attempt},
                    )
                    raise
                if self._metrics:
                    self._metrics.retries.inc()
                logger.warning(
                    "Fetch failed, retrying",
                    extra={
                        "file": entry.local_relative_path,
                        "attempt": state.attempt,
                        "staged_bytes": _staged_bytes(target),
                        "error": _describe(e),
                    },
                )
                await sleep_backoff(self._backoff_config, state)

    async def _download(self, entry: FileEntry, target: Path, offset: int) -> int:
        """
        Stream one object into ``target``.

        Returns:
            Byte offset the body was written from (0 when the server sent
            the whole object).
        """
        url = await self._source.presigned_url(entry.remote_locator)
        if offset > 0 and self._metrics:
            self._metrics.resumes.inc()

        try:
            async with self._source.open_object(url, offset) as stream:
                if offset > 0 and not stream.resumed:
                    logger.info(
                        "Server ignored range, restarting file",
                        extra={"file": entry.local_relative_path, "status": stream.status},
                    )
                    offset = 0
                elif offset > 0 and stream.offset != offset:
                    _truncate(target)
                    raise _ResumeRejected(f"server resumed at {stream.offset}, expected {offset}")

                length = stream.content_length
                if length is not None and offset + length > entry.expected_size:
                    raise CorruptArtifactError(
                        entry.local_relative_path,
                        f"body exceeds expected size ({entry.expected_size} bytes)",
                    )

                mode = "r+b" if offset > 0 else "wb"
                size = offset
                with target.open(mode) as f:
                    if offset > 0:
                        f.seek(offset)
                        f.truncate()
                    async for chunk in stream.iter_chunks():
                        size += len(chunk)
                        if size > entry.expected_size:
                            raise CorruptArtifactError(
                                entry.local_relative_path,
                                f"body exceeds expected size ({entry.expected_size} bytes)",
                            )
                        f.write(chunk)
                        if self._metrics:
                            self._metrics.bytes_downloaded.inc(len(chunk))
        except aiohttp.ClientResponseError as e:
            if offset > 0 and e.status == 416:
                _truncate(target)
                raise _ResumeRejected("range not satisfiable (HTTP 416)") from e
            raise

        logger.debug(
            "Fetched file",
            extra={"file": entry.local_relative_path, "offset": offset, "size": _staged_bytes(target)},
        )
        return offset


def _staged_bytes(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _truncate(path: Path) -> None:
    if path.exists():
        path.write_bytes(b"")


def _describe(error: BaseException) -> str:
    if isinstance(error, aiohttp.ClientResponseError):
        return f"HTTP {error.status}: {error.message}"
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__
