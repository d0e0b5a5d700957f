"""Card versions and download manifests.

- Semantic version parsing with latest-wins selection
- Manifest building with a fixed local naming convention
- File digests for integrity checks
"""

from opsml_cli.registry.manifest import (
    DownloadManifest,
    DownloadModifiers,
    FileEntry,
    FileLister,
    ManifestBuilder,
    compute_file_digest,
    parse_checksum,
    safe_suffix,
)
from opsml_cli.registry.version import (
    SemVer,
    VersionHint,
    is_concrete_version,
    parse_semver,
    parse_version_hint,
    select_latest,
)

__all__ = [
    "DownloadManifest",
    "DownloadModifiers",
    "FileEntry",
    "FileLister",
    "ManifestBuilder",
    "SemVer",
    "VersionHint",
    "compute_file_digest",
    "is_concrete_version",
    "parse_checksum",
    "parse_semver",
    "parse_version_hint",
    "safe_suffix",
    "select_latest",
]
