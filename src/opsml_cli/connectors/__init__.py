"""Connectors for the OpsML registry and object storage."""

from opsml_cli.connectors.backoff import (
    RETRYABLE_STATUSES,
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
    is_retryable_status,
    is_transient_error,
    parse_retry_after,
    sleep_backoff,
)
from opsml_cli.connectors.registry_client import (
    ObjectStream,
    OpsmlPaths,
    OpsmlRestClient,
    registry_session,
)

__all__ = [
    "RETRYABLE_STATUSES",
    "BackoffConfig",
    "BackoffState",
    "ObjectStream",
    "OpsmlPaths",
    "OpsmlRestClient",
    "compute_backoff_delay",
    "is_retryable_status",
    "is_transient_error",
    "parse_retry_after",
    "registry_session",
    "sleep_backoff",
]
