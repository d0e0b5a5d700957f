"""Wire contracts for the OpsML registry API."""

from opsml_cli.contracts.cards import (
    LOCATOR_KIND_ORDER,
    Card,
    CardSummary,
    FileInfo,
    ListCardRequest,
    ListCardResponse,
    ListFileInfoResponse,
    ListMetricResponse,
    LocatorKind,
    Metric,
    ModelMetadata,
    ModelMetadataRequest,
    PresignedUrl,
    RegistryType,
)

__all__ = [
    "LOCATOR_KIND_ORDER",
    "Card",
    "CardSummary",
    "FileInfo",
    "ListCardRequest",
    "ListCardResponse",
    "ListFileInfoResponse",
    "ListMetricResponse",
    "LocatorKind",
    "Metric",
    "ModelMetadata",
    "ModelMetadataRequest",
    "PresignedUrl",
    "RegistryType",
]
