"""Integrity verification of staged files."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opsml_cli.errors import CorruptArtifactError
from opsml_cli.registry.manifest import compute_file_digest, parse_checksum

if TYPE_CHECKING:
    from pathlib import Path

    from opsml_cli.registry.manifest import FileEntry

logger = logging.getLogger(__name__)


class IntegrityVerifier:
    """Checks a staged file against its manifest entry.

    Size is compared first (cheap), then the checksum digest.
    """

    def verify(self, entry: FileEntry, path: Path) -> None:
        """
        Verify one staged file.

        Raises:
            CorruptArtifactError: File missing, wrong size or wrong digest.
        """
        if not path.is_file():
            raise CorruptArtifactError(entry.local_relative_path, "staged file is missing")

        size = path.stat().st_size
        if size != entry.expected_size:
            raise CorruptArtifactError(
                entry.local_relative_path,
                f"size mismatch (expected {entry.expected_size} bytes, got {size})",
            )

        try:
            algorithm, expected = parse_checksum(entry.expected_checksum)
        except ValueError as e:
            raise CorruptArtifactError(entry.local_relative_path, str(e)) from e

        actual = compute_file_digest(path, algorithm)
        if actual != expected:
            raise CorruptArtifactError(
                entry.local_relative_path,
                f"{algorithm} mismatch (expected {expected}, got {actual})",
            )

        logger.debug(
            "Verified file",
            extra={"file": entry.local_relative_path, "size": size, "algorithm": algorithm},
        )
