"""
Query validation and card resolution.

A query names a card either by ``uid`` or by ``name`` (plus optional
``repository`` and version or version hint), never both. A concrete version
or uid goes straight to the metadata endpoint. A hint lists candidate cards
and picks the highest matching semantic version; registry ordering is
never used as a tie-break.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from opsml_cli.contracts.cards import (
    Card,
    ListCardRequest,
    ModelMetadataRequest,
    RegistryType,
)
from opsml_cli.errors import CardNotFoundError, InvalidQueryError
from opsml_cli.registry.manifest import DownloadModifiers
from opsml_cli.registry.version import (
    is_concrete_version,
    parse_version_hint,
    select_latest,
)

if TYPE_CHECKING:
    from opsml_cli.contracts.cards import ListCardResponse, ModelMetadata

logger = logging.getLogger(__name__)


class CardRegistry(Protocol):
    """Registry calls the resolver depends on."""

    async def list_cards(self, request: ListCardRequest) -> ListCardResponse: ...

    async def get_model_metadata(self, request: ModelMetadataRequest) -> ModelMetadata: ...


@dataclass(frozen=True)
class Query:
    """A user request for one model card.

    Attributes:
        name: Card name (name form).
        repository: Card repository (name form, optional).
        version: Concrete version or hint such as ``latest`` or ``1.*``.
        uid: Globally unique card id (uid form).
        ignore_release_candidates: Exclude prerelease versions from hints.
        modifiers: Optional variants to download with the base model.
    """

    name: str | None = None
    repository: str | None = None
    version: str | None = None
    uid: str | None = None
    ignore_release_candidates: bool = False
    modifiers: DownloadModifiers = field(default_factory=DownloadModifiers)

    @property
    def has_name_form(self) -> bool:
        return any(v is not None for v in (self.name, self.repository, self.version))

    @property
    def has_uid_form(self) -> bool:
        return self.uid is not None

    def validate(self) -> None:
        """Check that exactly one identification form is present.

        Raises:
            InvalidQueryError: Both forms, neither form, or a malformed value.
        """
        if self.has_name_form == self.has_uid_form:
            raise InvalidQueryError("Please provide either a uid or a name, repository, and version")

        if self.has_uid_form:
            if not self.uid or not self.uid.strip():
                raise InvalidQueryError("uid must not be empty")
            return

        if not self.name or not self.name.strip():
            raise InvalidQueryError("name is required when querying by name, repository, and version")
        if self.repository is not None and not self.repository.strip():
            raise InvalidQueryError("repository must not be empty")
        try:
            parse_version_hint(self.version)
        except ValueError as e:
            raise InvalidQueryError(str(e)) from e

    def describe(self) -> str:
        """Human readable identifier for messages."""
        if self.uid is not None:
            return f"uid={self.uid}"
        repo = f"{self.repository}/" if self.repository else ""
        return f"{repo}{self.name} ({self.version or 'latest'})"


class QueryResolver:
    """Resolves a query to exactly one card."""

    def __init__(self, registry: CardRegistry) -> None:
        self._registry = registry

    async def resolve(self, query: Query) -> Card:
        """
        Resolve a query to a card.

        Raises:
            InvalidQueryError: Query malformed (raised before any network call).
            CardNotFoundError: No card matches.
            RegistryUnavailableError: Registry unreachable after retries.
        """
        query.validate()

        if query.uid is not None:
            metadata = await self._registry.get_model_metadata(
                ModelMetadataRequest(
                    uid=query.uid,
                    ignore_release_candidates=query.ignore_release_candidates,
                )
            )
            card = Card.from_metadata(metadata, uid=query.uid)
        elif is_concrete_version(query.version):
            metadata = await self._registry.get_model_metadata(
                ModelMetadataRequest(
                    name=query.name,
                    repository=query.repository,
                    version=query.version,
                    ignore_release_candidates=query.ignore_release_candidates,
                )
            )
            card = Card.from_metadata(metadata)
        else:
            uid = await self._resolve_hint(query)
            metadata = await self._registry.get_model_metadata(
                ModelMetadataRequest(
                    uid=uid,
                    ignore_release_candidates=query.ignore_release_candidates,
                )
            )
            card = Card.from_metadata(metadata, uid=uid)

        logger.info(
            "Resolved card",
            extra={
                "card": card.name,
                "repository": card.repository,
                "version": card.version,
                "card_uid": card.uid,
            },
        )
        return card

    async def _resolve_hint(self, query: Query) -> str:
        """Pick the uid of the highest version matching a hint (latest wins)."""
        hint = parse_version_hint(query.version)
        response = await self._registry.list_cards(
            ListCardRequest(
                registry_type=RegistryType.MODEL,
                name=query.name,
                repository=query.repository,
                ignore_release_candidates=query.ignore_release_candidates,
            )
        )

        candidates = [
            c
            for c in response.cards
            if c.name == query.name and (query.repository is None or c.repository == query.repository)
        ]
        repositories = sorted({c.repository for c in candidates})
        if len(repositories) > 1:
            raise InvalidQueryError(
                f"Card {query.name!r} exists in several repositories ({', '.join(repositories)}); "
                "pass --repository"
            )

        winner = select_latest(
            candidates,
            lambda c: c.version,
            hint,
            include_prereleases=not query.ignore_release_candidates,
        )
        if winner is None:
            raise CardNotFoundError(f"No model card found for {query.describe()}")

        logger.debug(
            "Version hint resolved",
            extra={"hint": hint.raw or "latest", "version": winner.version, "candidates": len(candidates)},
        )
        return winner.uid
