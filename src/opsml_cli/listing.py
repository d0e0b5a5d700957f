"""Card listing and run metric lookups, rendered as rich tables."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from rich import box
from rich.table import Table

from opsml_cli.connectors.registry_client import registry_session
from opsml_cli.contracts.cards import ListCardRequest, RegistryType
from opsml_cli.errors import InvalidQueryError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from opsml_cli.config import ClientConfig
    from opsml_cli.connectors.registry_client import OpsmlRestClient
    from opsml_cli.contracts.cards import ListCardResponse, ListMetricResponse

logger = logging.getLogger(__name__)

VALID_REGISTRIES = tuple(r.value for r in RegistryType)


def validate_registry(registry: str) -> RegistryType:
    """
    Map a registry name to its type.

    Raises:
        InvalidQueryError: Unknown registry.
    """
    try:
        return RegistryType(registry.strip().lower())
    except ValueError as e:
        raise InvalidQueryError(
            f"Invalid registry: {registry}. Valid registries are: {', '.join(VALID_REGISTRIES)}"
        ) from e


def parse_tags(
    tag_names: Sequence[str] | None,
    tag_values: Sequence[str] | None,
) -> dict[str, str]:
    """Zip tag names with tag values. Unpaired trailing items are dropped."""
    if not tag_names or not tag_values:
        return {}
    return {k.strip(): v.strip() for k, v in zip(tag_names, tag_values)}


def _cell(value: Any) -> str:
    return "None" if value is None else str(value)


def card_table(response: ListCardResponse) -> Table:
    """Render a card listing."""
    table = Table(box=box.SQUARE)
    for column in ("name", "repository", "date", "contact", "version", "uid"):
        table.add_column(column, justify="center")
    for card in response.cards:
        table.add_row(card.name, card.repository, card.date or "", card.contact, card.version, card.uid)
    return table


def metric_table(response: ListMetricResponse) -> Table:
    """Render run metrics. Missing step or timestamp shows as ``None``."""
    table = Table(title="Model Metrics", box=box.SQUARE)
    for column in ("metric", "value", "step", "timestamp"):
        table.add_column(column, justify="center")
    for metric in response.metric:
        table.add_row(metric.name, _cell(metric.value), _cell(metric.step), _cell(metric.timestamp))
    return table


async def list_cards(
    config: ClientConfig,
    registry: str,
    *,
    name: str | None = None,
    repository: str | None = None,
    version: str | None = None,
    uid: str | None = None,
    limit: int | None = None,
    tags: dict[str, str] | None = None,
    max_date: str | None = None,
    ignore_release_candidates: bool = False,
    client: OpsmlRestClient | None = None,
) -> ListCardResponse:
    """
    List cards from a registry.

    Raises:
        InvalidQueryError: Unknown registry or non-positive limit.
    """
    registry_type = validate_registry(registry)
    if limit is not None and limit < 1:
        raise InvalidQueryError(f"limit must be >= 1, got {limit}")

    request = ListCardRequest(
        registry_type=registry_type,
        name=name,
        repository=repository,
        version=version,
        uid=uid,
        limit=limit,
        tags=tags or {},
        max_date=max_date,
        ignore_release_candidates=ignore_release_candidates,
    )
    async with registry_session(config, client) as registry_client:
        response = await registry_client.list_cards(request)

    logger.info("Listed cards", extra={"registry": registry_type.value, "count": len(response.cards)})
    return response


async def get_model_metrics(
    config: ClientConfig,
    uid: str,
    *,
    client: OpsmlRestClient | None = None,
) -> ListMetricResponse:
    """
    Fetch metrics logged for a run.

    Raises:
        InvalidQueryError: Empty uid.
    """
    if not uid.strip():
        raise InvalidQueryError("uid must not be empty")
    async with registry_session(config, client) as registry_client:
        return await registry_client.get_metrics(uid)
