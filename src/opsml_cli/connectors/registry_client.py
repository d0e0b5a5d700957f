"""
Async REST client for the OpsML registry.

Registry endpoints (relative to OPSML_TRACKING_URI):
- POST /opsml/cards/list          card listing
- POST /opsml/models/metadata     model metadata record
- GET  /opsml/files/list/info     objects under a locator, with size/checksum
- GET  /opsml/files/presigned     presigned GET url for one object
- GET  /opsml/metrics             run metrics

The bearer credential is sent to the registry only, never to presigned
object URLs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp
import orjson
from pydantic import ValidationError

from opsml_cli.connectors.backoff import (
    BackoffConfig,
    BackoffState,
    is_retryable_status,
    parse_retry_after,
    sleep_backoff,
)
from opsml_cli.contracts.cards import (
    ListCardResponse,
    ListFileInfoResponse,
    ListMetricResponse,
    ModelMetadata,
    PresignedUrl,
)
from opsml_cli.errors import (
    CardNotFoundError,
    RegistryRequestError,
    RegistryUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from opsml_cli.config import ClientConfig
    from opsml_cli.contracts.cards import (
        FileInfo,
        ListCardRequest,
        ModelMetadataRequest,
    )

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16


class OpsmlPaths:
    """Registry route paths."""

    LIST_CARD = "/opsml/cards/list"
    METADATA_DOWNLOAD = "/opsml/models/metadata"
    LIST_FILE_INFO = "/opsml/files/list/info"
    PRESIGNED = "/opsml/files/presigned"
    METRIC = "/opsml/metrics"


@dataclass
class ObjectStream:
    """An open object GET response.

    Attributes:
        status: HTTP status (200 full body, 206 partial content).
        offset: Byte offset the body starts at (0 unless resumed).
        content_length: Body length if the server sent one.
        response: Underlying aiohttp response to stream from.
    """

    status: int
    offset: int
    content_length: int | None
    response: aiohttp.ClientResponse

    @property
    def resumed(self) -> bool:
        return self.status == 206

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield body chunks."""
        async for chunk in self.response.content.iter_chunked(CHUNK_SIZE):
            yield chunk


class OpsmlRestClient:
    """
    Async REST client for OpsML registry and object retrieval.

    Registry calls retry transient failures with exponential backoff and
    surface RegistryUnavailableError once retries are exhausted. Object
    fetches are not retried here; the download engine owns that policy.
    """

    def __init__(
        self,
        config: ClientConfig,
        backoff_config: BackoffConfig | None = None,
    ) -> None:
        """
        Initialize the REST client.

        Args:
            config: Client configuration.
            backoff_config: Retry policy for registry calls
                (default: max_retries from config).
        """
        self._config = config
        self._backoff_config = backoff_config or BackoffConfig(max_retries=config.max_retries)
        self._session: aiohttp.ClientSession | None = None

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            # No total timeout: object bodies can be large. Stalls are caught per read.
            timeout = aiohttp.ClientTimeout(
                total=None,
                sock_connect=self._config.request_timeout_s,
                sock_read=self._config.request_timeout_s,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> OpsmlRestClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        return f"{self._config.tracking_uri}{path}"

    def _registry_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> Any | None:
        """
        Make a registry request with retry logic.

        Returns:
            Decoded JSON body, or None on 404.

        Raises:
            RegistryUnavailableError: Transient failures exhausted retries.
            RegistryRequestError: Non-retryable 4xx or an undecodable body.
        """
        url = self._url(path)
        headers = self._registry_headers()
        if body is not None:
            headers["Content-Type"] = "application/json"
        request_timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
        state = BackoffState()
        last_status: int | None = None
        last_error = ""

        while True:
            retry_after_ms: int | None = None
            try:
                session = await self._get_session()
                async with session.request(
                    method,
                    url,
                    params=params,
                    data=body,
                    headers=headers,
                    timeout=request_timeout,
                ) as response:
                    if response.status == 404:
                        return None

                    if 200 <= response.status < 300:
                        raw = await response.read()
                        if not raw.strip():
                            return None
                        try:
                            return orjson.loads(raw)
                        except orjson.JSONDecodeError as e:
                            raise RegistryRequestError(
                                f"Registry returned invalid JSON for {path}: {e}",
                                status=response.status,
                            ) from e

                    text = await response.text()
                    last_status = response.status
                    last_error = f"HTTP {response.status}: {text[:200]}"
                    if not is_retryable_status(response.status):
                        logger.error(
                            "Registry rejected request",
                            extra={"path": path, "status": response.status, "body": text},
                        )
                        raise RegistryRequestError(
                            f"Registry rejected {method} {path} ({last_error})",
                            status=response.status,
                        )
                    retry_after_ms = parse_retry_after(response.headers.get("Retry-After"))

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"

            state.record_error()
            if state.exhausted(self._backoff_config):
                raise RegistryUnavailableError(
                    f"Registry unavailable after {state.attempt} attempt(s) for {path}: {last_error}",
                    status=last_status,
                )
            logger.warning(
                "Registry request failed, retrying",
                extra={"path": path, "attempt": state.attempt, "error": last_error},
            )
            await sleep_backoff(self._backoff_config, state, retry_after_ms)

    @staticmethod
    def _validate(model: Any, data: Any, path: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RegistryRequestError(f"Unexpected response shape from {path}: {e}") from e

    async def list_cards(self, request: ListCardRequest) -> ListCardResponse:
        """List cards matching a request."""
        data = await self._request("POST", OpsmlPaths.LIST_CARD, body=request.to_json())
        if data is None:
            return ListCardResponse()
        result: ListCardResponse = self._validate(ListCardResponse, data, OpsmlPaths.LIST_CARD)
        logger.debug("Listed cards", extra={"count": len(result.cards)})
        return result

    async def get_model_metadata(self, request: ModelMetadataRequest) -> ModelMetadata:
        """
        Fetch the metadata record for one model card.

        Raises:
            CardNotFoundError: Registry has no such card.
        """
        data = await self._request("POST", OpsmlPaths.METADATA_DOWNLOAD, body=request.to_json())
        if not data:
            ident = request.uid or f"{request.repository}/{request.name} v{request.version}"
            raise CardNotFoundError(f"No model card found for {ident}")
        metadata: ModelMetadata = self._validate(ModelMetadata, data, OpsmlPaths.METADATA_DOWNLOAD)
        return metadata

    async def list_file_info(self, locator: str) -> list[FileInfo]:
        """List objects under a locator with their size and checksum."""
        data = await self._request("GET", OpsmlPaths.LIST_FILE_INFO, params={"path": locator})
        if data is None:
            return []
        result: ListFileInfoResponse = self._validate(
            ListFileInfoResponse, data, OpsmlPaths.LIST_FILE_INFO
        )
        return list(result.files)

    async def presigned_url(self, uri: str) -> str:
        """Get a presigned GET url for an object.

        Raises:
            RegistryRequestError: Registry has no such object.
        """
        data = await self._request(
            "GET", OpsmlPaths.PRESIGNED, params={"path": uri, "method": "GET"}
        )
        if data is None:
            raise RegistryRequestError(f"No presigned url available for {uri}", status=404)
        presigned: PresignedUrl = self._validate(PresignedUrl, data, OpsmlPaths.PRESIGNED)
        return presigned.url

    async def get_metrics(self, run_uid: str) -> ListMetricResponse:
        """Fetch logged metrics for a run."""
        data = await self._request("GET", OpsmlPaths.METRIC, params={"run_uid": run_uid})
        if data is None:
            return ListMetricResponse()
        result: ListMetricResponse = self._validate(ListMetricResponse, data, OpsmlPaths.METRIC)
        return result

    @contextlib.asynccontextmanager
    async def open_object(self, url: str, offset: int = 0) -> AsyncIterator[ObjectStream]:
        """
        Open a GET on an object url, optionally from a byte offset.

        Relative urls are resolved against the registry and carry the bearer
        credential; absolute (presigned) urls never do.

        Raises:
            aiohttp.ClientResponseError: Non-2xx status (including 416).
            aiohttp.ClientError: Connection failures.
        """
        headers: dict[str, str] = {}
        if url.startswith("/"):
            url = self._url(url)
            headers.update(self._registry_headers())
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        session = await self._get_session()
        async with session.get(url, headers=headers) as response:
            if response.status >= 400:
                response.raise_for_status()

            start = 0
            if response.status == 206:
                start = _content_range_start(response.headers.get("Content-Range"), default=offset)
            content_length = response.content_length
            yield ObjectStream(
                status=response.status,
                offset=start,
                content_length=content_length,
                response=response,
            )


def _content_range_start(header: str | None, default: int) -> int:
    """Parse the first byte position from ``Content-Range: bytes a-b/n``."""
    if not header:
        return default
    with contextlib.suppress(ValueError, IndexError):
        return int(header.split()[1].split("-")[0])
    return default


@contextlib.asynccontextmanager
async def registry_session(
    config: ClientConfig, client: OpsmlRestClient | None = None
) -> AsyncIterator[OpsmlRestClient]:
    """Use the given client, or own one for the duration of the block."""
    if client is not None:
        yield client
        return
    async with OpsmlRestClient(config) as owned:
        yield owned
