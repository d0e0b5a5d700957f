"""Model download pipeline.

- Query resolution with latest-wins version hints
- Concurrent, resumable retrieval into a private staging directory
- Size and checksum verification of every file
- Atomic promotion into the destination directory
"""

from opsml_cli.download.engine import DownloadEngine, DownloadSession, EntryStatus
from opsml_cli.download.materializer import Materializer, create_staging_dir, staging_dir_for
from opsml_cli.download.pipeline import (
    METADATA_FILENAME,
    DownloadResult,
    download_model,
    download_model_metadata,
    write_atomic,
)
from opsml_cli.download.resolver import Query, QueryResolver
from opsml_cli.download.verifier import IntegrityVerifier

__all__ = [
    "METADATA_FILENAME",
    "DownloadEngine",
    "DownloadResult",
    "DownloadSession",
    "EntryStatus",
    "IntegrityVerifier",
    "Materializer",
    "Query",
    "QueryResolver",
    "create_staging_dir",
    "download_model",
    "download_model_metadata",
    "staging_dir_for",
    "write_atomic",
]
