"""Download manifests for model cards.

A manifest is the ordered list of remote objects to fetch for one card and
the local path each lands at. Local paths follow a fixed naming convention
keyed by locator kind; remote object names are never trusted as paths.

Single-object locators:
    base          model<ext>              (model-base<ext> if it would clash)
    onnx          model.onnx              (model-quantized.onnx when quantized)
    preprocessor  preprocessor<ext>

Directory locators (several objects under one prefix):
    base          model/<relative path>
    onnx          onnx/<relative path>
    preprocessor  preprocessor/<relative path>

Checksums are written as ``algorithm:hexdigest``; a bare hex digest is sha256.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Protocol

from opsml_cli.contracts.cards import LOCATOR_KIND_ORDER, LocatorKind
from opsml_cli.errors import InvalidManifestError, InvalidQueryError, OnnxNotAvailableError

if TYPE_CHECKING:
    from pathlib import Path

    from opsml_cli.contracts.cards import Card, FileInfo

logger = logging.getLogger(__name__)

DEFAULT_CHECKSUM_ALGORITHM = "sha256"

_SUFFIX_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,16}$")
_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9._\-]+$")
_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")

_KIND_DIRS: dict[LocatorKind, str] = {
    LocatorKind.BASE: "model",
    LocatorKind.ONNX: "onnx",
    LocatorKind.PREPROCESSOR: "preprocessor",
}

NO_ONNX_URI = "No onnx model uri found but onnx flag set to true"
NO_QUANTIZE_URI = "No quantized model uri found but quantize flag set to true"


@dataclass(frozen=True)
class DownloadModifiers:
    """Optional variants requested alongside the base model."""

    onnx: bool = False
    preprocessor: bool = False
    quantize: bool = False

    def __post_init__(self) -> None:
        if self.quantize and not self.onnx:
            raise InvalidQueryError("--quantize selects the quantized ONNX model and requires --onnx")


@dataclass(frozen=True)
class FileEntry:
    """One remote object and where it lands locally.

    Attributes:
        remote_locator: Registry path of the object.
        local_relative_path: POSIX path relative to the destination directory.
        expected_size: Size in bytes reported by the registry.
        expected_checksum: ``algorithm:hexdigest`` reported by the registry.
        kind: Which card locator the object belongs to.
    """

    remote_locator: str
    local_relative_path: str
    expected_size: int
    expected_checksum: str
    kind: LocatorKind = LocatorKind.BASE


@dataclass
class DownloadManifest:
    """Ordered list of file entries for one card."""

    card_name: str
    card_version: str
    card_uid: str | None
    entries: list[FileEntry] = field(default_factory=list)

    @property
    def local_paths(self) -> list[str]:
        return [e.local_relative_path for e in self.entries]

    @property
    def total_bytes(self) -> int:
        return sum(e.expected_size for e in self.entries)


class FileLister(Protocol):
    """Lists remote objects (with size and checksum) under a locator."""

    async def list_file_info(self, locator: str) -> list[FileInfo]: ...


def parse_checksum(checksum: str) -> tuple[str, str]:
    """Split a checksum into (algorithm, lowercase hexdigest).

    Raises:
        ValueError: If the algorithm is unknown or the digest is not hex.
    """
    algorithm, sep, digest = checksum.strip().partition(":")
    if not sep:
        algorithm, digest = DEFAULT_CHECKSUM_ALGORITHM, algorithm
    algorithm = algorithm.lower().replace("-", "")
    if algorithm not in hashlib.algorithms_guaranteed:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm!r}")
    if not digest or not _HEX_PATTERN.match(digest):
        raise ValueError(f"Checksum digest is not hex: {checksum!r}")
    return algorithm, digest.lower()


def compute_file_digest(filepath: Path, algorithm: str = DEFAULT_CHECKSUM_ALGORITHM) -> str:
    """Compute the hex digest of a file.

    Args:
        filepath: Path to file.
        algorithm: hashlib algorithm name.

    Returns:
        Hex-encoded digest.

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    hasher = hashlib.new(algorithm)
    with filepath.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def safe_suffix(uri: str) -> str:
    """Return the trailing file extensions of a remote name if they are safe.

    At most three extensions are kept (``.tar.gz`` style), each alphanumeric.
    Anything else yields an empty suffix.
    """
    name = PurePosixPath(uri.rstrip("/")).name
    kept: list[str] = []
    for suffix in reversed(PurePosixPath(name).suffixes):
        if len(kept) == 3 or not _SUFFIX_PATTERN.match(suffix):
            break
        kept.insert(0, suffix)
    return "".join(kept)


def _relative_under(locator: str, uri: str) -> str:
    """Validate and return the path of ``uri`` below directory ``locator``."""
    prefix = locator.rstrip("/") + "/"
    if not uri.startswith(prefix):
        raise InvalidManifestError(f"Object {uri!r} is not under locator {locator!r}")
    parts = uri[len(prefix):].split("/")
    for part in parts:
        if part in ("", ".", "..") or not _SAFE_COMPONENT.match(part):
            raise InvalidManifestError(f"Unsafe object path {uri!r} under locator {locator!r}")
    return "/".join(parts)


class ManifestBuilder:
    """Turns a resolved card plus modifiers into an ordered manifest.

    The same card and modifiers always yield the same manifest: kinds are
    emitted in base, onnx, preprocessor order and objects within a kind are
    sorted by remote uri.
    """

    def __init__(self, lister: FileLister) -> None:
        self._lister = lister

    @staticmethod
    def select_locators(card: Card, modifiers: DownloadModifiers) -> list[tuple[LocatorKind, str]]:
        """Choose which card locators to fetch.

        Raises:
            OnnxNotAvailableError: ONNX requested but the card has none.
        """
        selected: list[tuple[LocatorKind, str]] = [(LocatorKind.BASE, card.base_locator)]

        if modifiers.onnx:
            if modifiers.quantize:
                if not card.quantized_locator:
                    raise OnnxNotAvailableError(f"{NO_QUANTIZE_URI} ({card.name} v{card.version})")
                selected.append((LocatorKind.ONNX, card.quantized_locator))
            else:
                if not card.onnx_locator:
                    raise OnnxNotAvailableError(f"{NO_ONNX_URI} ({card.name} v{card.version})")
                selected.append((LocatorKind.ONNX, card.onnx_locator))

        if modifiers.preprocessor:
            if card.preprocessor_locator:
                selected.append((LocatorKind.PREPROCESSOR, card.preprocessor_locator))
            else:
                logger.warning(
                    "Preprocessor requested but card has none; skipping",
                    extra={"card": card.name, "version": card.version},
                )

        return sorted(selected, key=lambda item: LOCATOR_KIND_ORDER.index(item[0]))

    async def build(self, card: Card, modifiers: DownloadModifiers) -> DownloadManifest:
        """Build the manifest for a card.

        Raises:
            OnnxNotAvailableError: ONNX requested but the card has none.
            InvalidManifestError: A locator lists no objects, unsafe paths,
                malformed checksums, or colliding local paths.
        """
        selected = self.select_locators(card, modifiers)
        listings: dict[LocatorKind, list[FileInfo]] = {}
        for kind, locator in selected:
            files = sorted(await self._lister.list_file_info(locator), key=lambda f: f.uri)
            if not files:
                raise InvalidManifestError(f"No objects found under {kind.value} locator {locator!r}")
            listings[kind] = files

        manifest = DownloadManifest(card_name=card.name, card_version=card.version, card_uid=card.uid)
        seen: set[str] = set()
        for kind, locator in selected:
            files = listings[kind]
            single = len(files) == 1 and files[0].uri.rstrip("/") == locator.rstrip("/")
            for info in files:
                if single:
                    local = self._single_name(kind, info.uri, modifiers, listings)
                else:
                    local = f"{_KIND_DIRS[kind]}/{_relative_under(locator, info.uri)}"
                if local in seen:
                    raise InvalidManifestError(f"Two objects map to the same local path {local!r}")
                try:
                    parse_checksum(info.checksum)
                except ValueError as e:
                    raise InvalidManifestError(f"{info.uri}: {e}") from e
                seen.add(local)
                manifest.entries.append(
                    FileEntry(
                        remote_locator=info.uri,
                        local_relative_path=local,
                        expected_size=info.size,
                        expected_checksum=info.checksum,
                        kind=kind,
                    )
                )

        logger.info(
            "Built download manifest",
            extra={"card": card.name, "version": card.version, "files": len(manifest.entries)},
        )
        return manifest

    @staticmethod
    def _single_name(
        kind: LocatorKind,
        uri: str,
        modifiers: DownloadModifiers,
        listings: dict[LocatorKind, list[FileInfo]],
    ) -> str:
        if kind == LocatorKind.ONNX:
            return "model-quantized.onnx" if modifiers.quantize else "model.onnx"
        suffix = safe_suffix(uri)
        if kind == LocatorKind.PREPROCESSOR:
            return f"preprocessor{suffix}"
        if suffix == ".onnx" and LocatorKind.ONNX in listings and not modifiers.quantize:
            return f"model-base{suffix}"
        return f"model{suffix}"
