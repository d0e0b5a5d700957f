"""
Atomic promotion of a verified staging directory.

The staging directory lives next to the destination (same filesystem) so
promotion is a rename, never a copy. Replacing existing content is a
two-rename swap:

    destination -> .<name>.old-<token>
    staging     -> destination
    remove .<name>.old-<token>

If the second rename fails the first is rolled back, so the destination
always holds a complete set of files. Another process may promote into the
same destination between the two renames; the swap is then repeated and
the last rename to complete wins.

Staging directories carry a marker file written when they are created.
Only marked directories are ever pruned, discarded or promoted.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
from typing import TYPE_CHECKING

from opsml_cli.errors import InvalidQueryError, MaterializationFailedError

if TYPE_CHECKING:
    from pathlib import Path

    from opsml_cli.download.engine import DownloadSession

logger = logging.getLogger(__name__)

STAGING_MARKER = ".opsml-staging"
SWAP_ATTEMPTS = 3


def staging_dir_for(destination: Path) -> Path:
    """Private staging directory path next to ``destination``."""
    return destination.parent / f".{destination.name}.staging-{secrets.token_hex(6)}"


def is_staging_dir(path: Path) -> bool:
    return (path / STAGING_MARKER).is_file()


def check_staging_dir(path: Path) -> None:
    """
    Accept ``path`` as a staging directory only if it is absent or ours.

    Raises:
        InvalidQueryError: ``path`` exists and was not created as a staging directory.
    """
    if os.path.lexists(path) and not (path.is_dir() and is_staging_dir(path)):
        raise InvalidQueryError(
            f"Staging directory {path} already exists and was not created by opsml-cli"
        )


def create_staging_dir(path: Path) -> None:
    """Create (or reuse) a marked staging directory."""
    check_staging_dir(path)
    path.mkdir(parents=True, exist_ok=True)
    (path / STAGING_MARKER).touch()


def discard_staging_dir(path: Path) -> None:
    """Remove a staging directory, leaving unmarked directories alone."""
    if not is_staging_dir(path):
        logger.warning("Not removing unmarked staging directory", extra={"staging_dir": str(path)})
        return
    logger.info("Discarding staging directory", extra={"staging_dir": str(path)})
    shutil.rmtree(path, ignore_errors=True)


class Materializer:
    """Promotes a fully verified session into the destination directory."""

    def materialize(self, session: DownloadSession, destination: Path) -> None:
        """
        Replace ``destination`` with the session's staging directory.

        Raises:
            MaterializationFailedError: Session not fully verified, staging
                directory unmarked, or a rename failed. Destination holds
                complete content, staging directory left intact.
        """
        staging = session.staging_dir
        if not session.all_verified:
            raise MaterializationFailedError(
                f"Refusing to materialize: {len(session.failed_paths)} file(s) not verified",
                staging_dir=str(staging),
            )
        if not is_staging_dir(staging):
            raise MaterializationFailedError(
                f"Refusing to materialize unmarked directory {staging}", staging_dir=str(staging)
            )

        try:
            self._prune_unlisted(session)
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MaterializationFailedError(
                f"Could not prepare {destination}: {e}", staging_dir=str(staging)
            ) from e

        marker = staging / STAGING_MARKER
        marker.unlink()
        try:
            self._promote(staging, destination)
        except MaterializationFailedError:
            marker.touch()
            raise

        logger.info(
            "Materialized download",
            extra={"destination": str(destination), "files": len(session.manifest.entries)},
        )

    def _promote(self, staging: Path, destination: Path) -> None:
        if os.path.lexists(destination) and not destination.is_dir():
            raise MaterializationFailedError(
                f"Destination {destination} exists and is not a directory",
                staging_dir=str(staging),
            )

        backups: list[Path] = []
        stranded: Path | None = None
        try:
            for _ in range(SWAP_ATTEMPTS):
                if os.path.lexists(destination):
                    backups.append(self._move_aside(staging, destination))
                try:
                    os.rename(staging, destination)
                    return
                except OSError as e:
                    if os.path.lexists(destination):
                        logger.warning(
                            "Destination replaced concurrently, retrying swap",
                            extra={"destination": str(destination)},
                        )
                        continue
                    if backups:
                        stranded = self._roll_back(backups.pop(), destination)
                    raise MaterializationFailedError(
                        f"Could not move {staging} to {destination}: {e}", staging_dir=str(staging)
                    ) from e
            raise MaterializationFailedError(
                f"Destination {destination} kept being replaced concurrently", staging_dir=str(staging)
            )
        finally:
            for backup in backups:
                if backup != stranded:
                    shutil.rmtree(backup, ignore_errors=True)

    @staticmethod
    def _move_aside(staging: Path, destination: Path) -> Path:
        backup = destination.parent / f".{destination.name}.old-{secrets.token_hex(6)}"
        try:
            os.rename(destination, backup)
        except OSError as e:
            raise MaterializationFailedError(
                f"Could not move existing {destination} aside: {e}", staging_dir=str(staging)
            ) from e
        return backup

    @staticmethod
    def _roll_back(backup: Path, destination: Path) -> Path | None:
        """Put ``backup`` back; returns it when it had to be left aside."""
        try:
            os.rename(backup, destination)
        except OSError as e:
            logger.error(
                "Rollback failed, prior content kept aside",
                extra={"backup": str(backup), "error": str(e)},
            )
            return backup
        return None

    @staticmethod
    def _prune_unlisted(session: DownloadSession) -> None:
        """Drop staged files the manifest does not name (left over from resumed runs)."""
        wanted = {session.staged_path(e) for e in session.manifest.entries}
        wanted.add(session.staging_dir / STAGING_MARKER)
        for path in sorted(session.staging_dir.rglob("*"), reverse=True):
            if path.is_dir():
                if not any(path.iterdir()):
                    path.rmdir()
            elif path not in wanted:
                logger.debug("Removing unlisted staged file", extra={"file": str(path)})
                path.unlink()
