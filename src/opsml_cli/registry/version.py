"""Card version parsing, hint matching and latest-wins selection.

Version string format (semantic versioning):
    {major}.{minor}.{patch}[-{prerelease}][+{build}]

Examples:
    1.0.0
    1.2.0-rc.1
    2.0.0+abc1234

Version hints accepted in queries:
    latest, *        any version
    1, 1.*           major 1
    1.2, 1.2.*       major 1, minor 2
    ^1.2.3           same major, >= 1.2.3
    ~1.2.3           same major.minor, >= 1.2.3
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

T = TypeVar("T")

VERSION_PATTERN = re.compile(
    r"^v?"
    r"(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"$"
)

# Partial versions used as hints: "1", "1.2", "1.*", "1.2.*"
PARTIAL_PATTERN = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)(?:\.(?P<minor>0|[1-9]\d*))?(?:\.\*)?$"
)

LATEST_HINTS = frozenset({"latest", "*", ""})


@total_ordering
@dataclass(frozen=True)
class SemVer:
    """Parsed semantic version.

    Attributes:
        major: Major version number.
        minor: Minor version number.
        patch: Patch version number.
        prerelease: Dot-separated prerelease identifiers (empty for releases).
        build: Build metadata (ignored for ordering).
        raw: Original version string.
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str = ""
    raw: str = ""

    def __str__(self) -> str:
        return self.raw or f"{self.major}.{self.minor}.{self.patch}"

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def _key(self) -> tuple[int, int, int, int, tuple[tuple[int, int | str], ...]]:
        # Releases sort above any prerelease of the same core version.
        # Numeric identifiers sort below alphanumeric ones.
        pre = tuple((0, int(p)) if p.isdigit() else (1, p) for p in self.prerelease)
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, pre)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())


def parse_semver(version_str: str) -> SemVer:
    """Parse a concrete semantic version string.

    Raises:
        ValueError: If the string is not a concrete semantic version.
    """
    match = VERSION_PATTERN.match(version_str.strip())
    if not match:
        msg = f"Invalid version string: {version_str!r}. Expected format: X.Y.Z[-pre][+build]"
        raise ValueError(msg)
    prerelease = match.group("prerelease")
    return SemVer(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=tuple(prerelease.split(".")) if prerelease else (),
        build=match.group("build") or "",
        raw=version_str.strip(),
    )


def is_concrete_version(version_str: str | None) -> bool:
    """True if the string names exactly one semantic version."""
    return version_str is not None and VERSION_PATTERN.match(version_str.strip()) is not None


class HintKind(str, Enum):
    """How a version hint constrains candidates."""

    EXACT = "exact"
    ANY = "any"
    MAJOR = "major"
    MINOR = "minor"
    CARET = "caret"
    TILDE = "tilde"


@dataclass(frozen=True)
class VersionHint:
    """A version constraint from a user query."""

    kind: HintKind
    major: int = 0
    minor: int = 0
    floor: SemVer | None = None
    raw: str = ""

    def matches(self, version: SemVer) -> bool:
        """Check whether a concrete version satisfies the hint."""
        if self.kind == HintKind.ANY:
            return True
        if self.kind == HintKind.EXACT:
            return self.floor is not None and version == self.floor
        if self.kind == HintKind.MAJOR:
            return version.major == self.major
        if self.kind == HintKind.MINOR:
            return version.major == self.major and version.minor == self.minor
        assert self.floor is not None
        if version < self.floor:
            return False
        if self.kind == HintKind.CARET:
            return version.major == self.floor.major
        return version.major == self.floor.major and version.minor == self.floor.minor


def parse_version_hint(hint: str | None) -> VersionHint:
    """Parse a user supplied version or version hint.

    Raises:
        ValueError: If the hint is not understood.
    """
    raw = (hint or "").strip()
    if raw.lower() in LATEST_HINTS:
        return VersionHint(kind=HintKind.ANY, raw=raw)

    if raw[0] in "^~":
        floor = parse_semver(raw[1:])
        kind = HintKind.CARET if raw[0] == "^" else HintKind.TILDE
        return VersionHint(kind=kind, floor=floor, major=floor.major, minor=floor.minor, raw=raw)

    if is_concrete_version(raw):
        floor = parse_semver(raw)
        return VersionHint(kind=HintKind.EXACT, floor=floor, major=floor.major, minor=floor.minor, raw=raw)

    partial = PARTIAL_PATTERN.match(raw)
    if partial:
        major = int(partial.group("major"))
        if partial.group("minor") is None:
            return VersionHint(kind=HintKind.MAJOR, major=major, raw=raw)
        return VersionHint(kind=HintKind.MINOR, major=major, minor=int(partial.group("minor")), raw=raw)

    msg = (
        f"Invalid version hint: {raw!r}. "
        "Use X.Y.Z, X, X.Y, X.*, X.Y.*, ^X.Y.Z, ~X.Y.Z or latest"
    )
    raise ValueError(msg)


def select_latest(
    candidates: Iterable[T],
    version_of: Callable[[T], str],
    hint: VersionHint | None = None,
    *,
    include_prereleases: bool = True,
) -> T | None:
    """Pick the candidate with the highest semantic version.

    Registry ordering is never trusted. Candidates whose version does not
    parse are skipped. Ties on precedence (differing only in build metadata)
    are broken by the raw string so the choice is deterministic.

    Args:
        candidates: Objects to choose from.
        version_of: Accessor returning each candidate's version string.
        hint: Optional constraint candidates must satisfy.
        include_prereleases: When False, prerelease versions are excluded.

    Returns:
        The winning candidate, or None if nothing qualifies.
    """
    best: tuple[SemVer, T] | None = None
    for candidate in candidates:
        try:
            version = parse_semver(version_of(candidate))
        except ValueError:
            continue
        if not include_prereleases and version.is_prerelease:
            continue
        if hint is not None and not hint.matches(version):
            continue
        if best is None or (version, version.raw) > (best[0], best[0].raw):
            best = (version, candidate)
    return best[1] if best else None
