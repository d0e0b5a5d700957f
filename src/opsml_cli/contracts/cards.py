"""
Wire contracts for the OpsML registry API.

Requests are serialized with orjson; responses are validated with pydantic.
Registry records carry more fields than the CLI needs, so response models
ignore unknown keys instead of rejecting them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"))


class _Response(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def from_json(cls, data: bytes | str) -> Any:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class RegistryType(str, Enum):
    """Registries a card can be listed from."""

    DATA = "data"
    MODEL = "model"
    RUN = "run"
    PIPELINE = "pipeline"
    AUDIT = "audit"
    PROJECT = "project"


class LocatorKind(str, Enum):
    """Role of a storage locator on a model card."""

    BASE = "base"
    ONNX = "onnx"
    PREPROCESSOR = "preprocessor"


# Manifest order of kinds
LOCATOR_KIND_ORDER: tuple[LocatorKind, ...] = (
    LocatorKind.BASE,
    LocatorKind.ONNX,
    LocatorKind.PREPROCESSOR,
)


class ListCardRequest(_Request):
    """Body of POST /opsml/cards/list."""

    registry_type: RegistryType
    name: str | None = None
    repository: str | None = None
    version: str | None = None
    uid: str | None = None
    limit: int | None = Field(default=None, ge=1)
    tags: dict[str, str] = Field(default_factory=dict)
    max_date: str | None = None
    ignore_release_candidates: bool = False


class CardSummary(_Response):
    """One row of a card listing."""

    name: str
    repository: str
    date: str | None = None
    contact: str = ""
    version: str
    uid: str
    tags: dict[str, str] = Field(default_factory=dict)


class ListCardResponse(_Response):
    """Response of POST /opsml/cards/list."""

    cards: list[CardSummary] = Field(default_factory=list)


class ModelMetadataRequest(_Request):
    """Body of POST /opsml/models/metadata."""

    name: str | None = None
    repository: str | None = None
    version: str | None = None
    uid: str | None = None
    ignore_release_candidates: bool = False


class ModelMetadata(_Response):
    """Model metadata record returned by the registry.

    Attributes:
        model_uri: Locator of the trained model artifact.
        onnx_uri: Locator of the ONNX conversion, if registered with one.
        quantized_model_uri: Locator of the quantized ONNX model, if any.
        preprocessor_uri: Locator of a fitted preprocessor, if any.
        tokenizer_uri: Locator of a tokenizer (used as preprocessor fallback).
        feature_extractor_uri: Locator of a feature extractor (second fallback).
    """

    model_config = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

    model_name: str
    model_class: str = ""
    model_type: str = ""
    model_interface: str = ""
    model_uri: str = Field(..., min_length=1)
    model_version: str
    model_repository: str
    uid: str | None = None
    onnx_uri: str | None = None
    onnx_version: str | None = None
    quantized_model_uri: str | None = None
    preprocessor_uri: str | None = None
    preprocessor_name: str | None = None
    tokenizer_uri: str | None = None
    tokenizer_name: str | None = None
    feature_extractor_uri: str | None = None
    feature_extractor_name: str | None = None
    sample_data_uri: str | None = None
    data_schema: dict[str, Any] | None = None

    @field_validator(
        "onnx_uri",
        "quantized_model_uri",
        "preprocessor_uri",
        "tokenizer_uri",
        "feature_extractor_uri",
    )
    @classmethod
    def blank_locator_is_absent(cls, v: str | None) -> str | None:
        """Treat empty locator strings as missing."""
        return v or None

    def to_json(self) -> bytes:
        """Serialize to indented JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"), option=orjson.OPT_INDENT_2)


class Card(BaseModel):
    """A resolved model card. Immutable once resolved.

    The version is always concrete, never a hint.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: str | None
    name: str
    repository: str
    version: str
    artifact_kind: str
    base_locator: str
    onnx_locator: str | None = None
    quantized_locator: str | None = None
    preprocessor_locator: str | None = None
    metadata: ModelMetadata

    @classmethod
    def from_metadata(cls, metadata: ModelMetadata, uid: str | None = None) -> Card:
        """Build a card from a registry metadata record.

        The preprocessor locator falls back from preprocessor to tokenizer to
        feature extractor.
        """
        preprocessor = (
            metadata.preprocessor_uri
            or metadata.tokenizer_uri
            or metadata.feature_extractor_uri
        )
        return cls(
            uid=metadata.uid or uid,
            name=metadata.model_name,
            repository=metadata.model_repository,
            version=metadata.model_version,
            artifact_kind=metadata.model_interface or metadata.model_type or "model",
            base_locator=metadata.model_uri,
            onnx_locator=metadata.onnx_uri,
            quantized_locator=metadata.quantized_model_uri,
            preprocessor_locator=preprocessor,
            metadata=metadata,
        )


class FileInfo(_Response):
    """One remote object under a locator, with its integrity data."""

    uri: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    checksum: str = Field(..., min_length=1)


class ListFileInfoResponse(_Response):
    """Response of GET /opsml/files/list/info."""

    files: list[FileInfo] = Field(default_factory=list)


class PresignedUrl(_Response):
    """Response of GET /opsml/files/presigned."""

    url: str = Field(..., min_length=1)


class Metric(_Response):
    """A single logged run metric."""

    run_uid: str
    name: str
    value: Any
    step: Any | None = None
    timestamp: Any | None = None


class ListMetricResponse(_Response):
    """Response of GET /opsml/metrics."""

    metric: list[Metric] = Field(default_factory=list)
