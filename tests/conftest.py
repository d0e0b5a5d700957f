"""Shared fixtures: an in-process fake OpsML registry and object store."""

from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, unquote

import aiohttp.web
import pytest

from opsml_cli.config import ClientConfig

SIGNATURE_PARAM = "X-Amz-Signature=fake-signature"


def sha256_checksum(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@dataclass
class ObjectRequest:
    """One GET against the object store."""

    uri: str
    range: str | None
    authorization: str | None


@dataclass
class FakeOpsmlServer:
    """
    Fake OpsML server: registry routes plus a Range-capable object store.

    Faults are queued per object uri and consumed one per GET:
    - an int status (e.g. 503): respond with that status
    - "truncate": send half the body, then drop the connection
    - "corrupt": send a body of the right length with wrong content
    - "ignore_range": answer 200 with the full body even for a Range request
    - "stall": hold the response open until the server stops
    - "unsized": stream the body without a Content-Length header
    Registry faults are int statuses consumed one per registry call.
    """

    token: str | None = None
    cards: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, dict[str, Any]] = field(default_factory=dict)
    objects: dict[str, bytes] = field(default_factory=dict)
    checksums: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    faults: dict[str, list[int | str]] = field(default_factory=lambda: defaultdict(list))
    registry_faults: list[int] = field(default_factory=list)
    object_requests: list[ObjectRequest] = field(default_factory=list)
    registry_requests: list[tuple[str, str | None]] = field(default_factory=list)
    port: int = 0
    _runner: aiohttp.web.AppRunner | None = None
    _release: asyncio.Event = field(default_factory=asyncio.Event)

    # ----------------------------------------------------------------- setup

    def add_object(self, uri: str, data: bytes, *, checksum: str | None = None) -> None:
        self.objects[uri] = data
        self.checksums[uri] = checksum or sha256_checksum(data)

    def add_card(
        self,
        name: str,
        repository: str,
        version: str,
        *,
        model_uri: str,
        uid: str | None = None,
        registry_type: str = "model",
        date: str | None = "2023-06-01",
        contact: str = "mlops",
        tags: dict[str, str] | None = None,
        **metadata: Any,
    ) -> str:
        uid = uid or f"{name}-{version}"
        self.cards.append(
            {
                "registry_type": registry_type,
                "name": name,
                "repository": repository,
                "version": version,
                "uid": uid,
                "date": date,
                "contact": contact,
                "tags": tags or {},
            }
        )
        self.metadata[uid] = {
            "model_name": name,
            "model_class": "SklearnEstimator",
            "model_type": "RandomForestClassifier",
            "model_interface": "SklearnModel",
            "model_uri": model_uri,
            "model_version": version,
            "model_repository": repository,
            "uid": uid,
            **metadata,
        }
        return uid

    # --------------------------------------------------------------- helpers

    def _registry_call(self, request: aiohttp.web.Request) -> aiohttp.web.Response | None:
        self.registry_requests.append((request.path, request.headers.get("Authorization")))
        if self.token and request.headers.get("Authorization") != f"Bearer {self.token}":
            return aiohttp.web.json_response({"detail": "Not authenticated"}, status=401)
        if self.registry_faults:
            return aiohttp.web.Response(status=self.registry_faults.pop(0), text="unavailable")
        return None

    def _objects_under(self, locator: str) -> list[str]:
        prefix = locator.rstrip("/") + "/"
        return [uri for uri in self.objects if uri == locator or uri.startswith(prefix)]

    # -------------------------------------------------------------- handlers

    async def _list_cards(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        if (fault := self._registry_call(request)) is not None:
            return fault
        body = await request.json()
        cards = [c for c in self.cards if c["registry_type"] == body["registry_type"]]
        for key in ("name", "repository", "version", "uid"):
            if body.get(key):
                cards = [c for c in cards if c[key] == body[key]]
        for tag, value in body.get("tags", {}).items():
            cards = [c for c in cards if c["tags"].get(tag) == value]
        if body.get("limit"):
            cards = cards[: body["limit"]]
        return aiohttp.web.json_response(
            {"cards": [{k: v for k, v in c.items() if k != "registry_type"} for c in cards]}
        )

    async def _model_metadata(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        if (fault := self._registry_call(request)) is not None:
            return fault
        body = await request.json()
        if body.get("uid"):
            record = self.metadata.get(body["uid"])
        else:
            record = next(
                (
                    m
                    for m in self.metadata.values()
                    if m["model_name"] == body.get("name")
                    and m["model_version"] == body.get("version")
                    and (not body.get("repository") or m["model_repository"] == body["repository"])
                ),
                None,
            )
        if record is None:
            return aiohttp.web.json_response({"detail": "not found"}, status=404)
        return aiohttp.web.json_response(record)

    async def _list_file_info(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        if (fault := self._registry_call(request)) is not None:
            return fault
        locator = request.query["path"]
        files = [
            {"uri": uri, "size": len(self.objects[uri]), "checksum": self.checksums[uri]}
            for uri in self._objects_under(locator)
        ]
        return aiohttp.web.json_response({"files": files})

    async def _presigned(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        if (fault := self._registry_call(request)) is not None:
            return fault
        uri = request.query["path"]
        if uri not in self.objects:
            return aiohttp.web.json_response({"detail": "not found"}, status=404)
        return aiohttp.web.json_response({"url": f"{self.base_url}/objects/{quote(uri)}?{SIGNATURE_PARAM}"})

    async def _metrics(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        if (fault := self._registry_call(request)) is not None:
            return fault
        run_uid = request.query["run_uid"]
        if run_uid not in self.metrics:
            return aiohttp.web.json_response({"detail": "not found"}, status=404)
        return aiohttp.web.json_response({"metric": self.metrics[run_uid]})

    async def _object(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        uri = unquote(request.match_info["uri"])
        range_header = request.headers.get("Range")
        self.object_requests.append(ObjectRequest(uri, range_header, request.headers.get("Authorization")))
        if uri not in self.objects:
            return aiohttp.web.Response(status=404)

        data = self.objects[uri]
        fault = self.faults[uri].pop(0) if self.faults[uri] else None
        if isinstance(fault, int):
            return aiohttp.web.Response(status=fault, text="injected failure")
        if fault == "corrupt":
            return aiohttp.web.Response(body=bytes(len(data)))
        if fault == "stall":
            await self._release.wait()
            return aiohttp.web.Response(status=503, text="released")

        start = 0
        if range_header and fault != "ignore_range":
            start = int(range_header.removeprefix("bytes=").split("-")[0])
            if start >= len(data):
                return aiohttp.web.Response(
                    status=416, headers={"Content-Range": f"bytes */{len(data)}"}
                )

        body = data[start:]
        response = aiohttp.web.StreamResponse(status=206 if start else 200)
        if fault != "unsized":
            response.content_length = len(body)
        if start:
            response.headers["Content-Range"] = f"bytes {start}-{len(data) - 1}/{len(data)}"
        await response.prepare(request)

        if fault == "truncate":
            await response.write(body[: len(body) // 2])
            # Let the client consume the partial body before the drop
            await asyncio.sleep(0.05)
            assert request.transport is not None
            request.transport.close()
            return response

        await response.write(body)
        await response.write_eof()
        return response

    # ------------------------------------------------------------- lifecycle

    def make_app(self) -> aiohttp.web.Application:
        app = aiohttp.web.Application()
        app.router.add_post("/opsml/cards/list", self._list_cards)
        app.router.add_post("/opsml/models/metadata", self._model_metadata)
        app.router.add_get("/opsml/files/list/info", self._list_file_info)
        app.router.add_get("/opsml/files/presigned", self._presigned)
        app.router.add_get("/opsml/metrics", self._metrics)
        app.router.add_get("/objects/{uri:.+}", self._object)
        return app

    async def start(self) -> None:
        self._runner = aiohttp.web.AppRunner(self.make_app())
        await self._runner.setup()
        site = aiohttp.web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        assert self._runner.addresses
        self.port = self._runner.addresses[0][1]

    async def stop(self) -> None:
        self._release.set()
        if self._runner:
            await self._runner.cleanup()

    async def __aenter__(self) -> FakeOpsmlServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def config(self, **overrides: Any) -> ClientConfig:
        values: dict[str, Any] = {"tracking_uri": self.base_url, "token": self.token, "request_timeout_s": 5.0}
        values.update(overrides)
        return ClientConfig(**values)


@pytest.fixture()
def opsml_server() -> FakeOpsmlServer:
    """Unstarted fake server; use ``async with opsml_server:`` in the test."""
    return FakeOpsmlServer()


@pytest.fixture()
def fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make backoff sleeps instant."""

    async def no_sleep(config: Any, state: Any, retry_after_ms: int | None = None) -> int:
        return 0

    monkeypatch.setattr("opsml_cli.connectors.registry_client.sleep_backoff", no_sleep)
    monkeypatch.setattr("opsml_cli.download.engine.sleep_backoff", no_sleep)
