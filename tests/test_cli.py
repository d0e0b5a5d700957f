"""Tests for the command line entry point."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest

from opsml_cli import cli
from opsml_cli.contracts import Card, CardSummary, ListCardResponse, ListMetricResponse, ModelMetadata
from opsml_cli.download import DownloadResult
from opsml_cli.errors import CardNotFoundError, EntryFailure, PartialDownloadError
from opsml_cli.registry.manifest import DownloadManifest, FileEntry


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Keep main() from leaking handlers into other tests."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def tracking_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPSML_TRACKING_URI", "http://opsml.test")
    monkeypatch.delenv("OPSML_TOKEN", raising=False)


def _card() -> Card:
    return Card.from_metadata(
        ModelMetadata(
            model_name="clf",
            model_uri="root/model.joblib",
            model_version="1.2.0",
            model_repository="team",
            uid="uid-1",
        )
    )


class TestParser:
    """Argument parsing."""

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        """No subcommand shows help and succeeds."""
        assert cli.main([]) == 0
        assert "download-model" in capsys.readouterr().out

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        """version prints the package version."""
        assert cli.main(["version"]) == 0
        assert "opsml-cli version" in capsys.readouterr().out

    def test_info(self, capsys: pytest.CaptureFixture[str]) -> None:
        """info prints the banner and version."""
        assert cli.main(["info"]) == 0
        assert "opsml-cli version" in capsys.readouterr().out

    def test_tag_lists(self) -> None:
        """Tag names and values are comma separated lists."""
        args = cli.build_parser().parse_args(
            ["list-cards", "--registry", "model", "--tag-name", "team, stage", "--tag-value", "ml,prod"]
        )
        assert args.tag_name == ["team", "stage"]
        assert args.tag_value == ["ml", "prod"]

    def test_download_defaults(self) -> None:
        """download-model defaults to ./models and no variants."""
        args = cli.build_parser().parse_args(["download-model", "--name", "clf"])
        assert args.write_dir == Path("models")
        assert not (args.onnx or args.quantize or args.preprocessor)
        assert args.staging_dir is None


class TestExitCodes:
    """Failures map to stable exit codes."""

    def test_missing_tracking_uri(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Missing OPSML_TRACKING_URI is a config error."""
        monkeypatch.delenv("OPSML_TRACKING_URI", raising=False)
        assert cli.main(["list-cards", "--registry", "model"]) == 2
        assert "OPSML_TRACKING_URI" in capsys.readouterr().err

    def test_invalid_registry(self, tracking_env: None, capsys: pytest.CaptureFixture[str]) -> None:
        """Unknown registry is an invalid query."""
        assert cli.main(["list-cards", "--registry", "bogus"]) == 3
        assert "Invalid registry" in capsys.readouterr().err

    def test_quantize_without_onnx(self, tracking_env: None) -> None:
        """--quantize alone is rejected before any network call."""
        assert cli.main(["download-model", "--name", "clf", "--quantize"]) == 3

    def test_mixed_query_forms(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """uid with name is rejected even without configuration."""
        monkeypatch.delenv("OPSML_TRACKING_URI", raising=False)
        assert cli.main(["download-model", "--uid", "u", "--name", "clf"]) == 3

    def test_not_found(self, tracking_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        """CardNotFoundError exits 4."""

        async def fake_metadata(*args: Any, **kwargs: Any) -> Path:
            raise CardNotFoundError("No model card found")

        monkeypatch.setattr(cli, "download_model_metadata", fake_metadata)
        assert cli.main(["download-model-metadata", "--name", "clf"]) == 4

    def test_partial_download(
        self, tracking_env: None, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Partial failures exit 7 and name the failed file."""

        async def fake_download(*args: Any, **kwargs: Any) -> DownloadResult:
            raise PartialDownloadError([EntryFailure("model.onnx", "HTTP 503: Service Unavailable")])

        monkeypatch.setattr(cli, "download_model", fake_download)
        assert cli.main(["download-model", "--name", "clf", "--onnx"]) == 7
        assert "model.onnx" in capsys.readouterr().err


class TestCommands:
    """Successful command runs with the network layer stubbed."""

    def test_list_cards(
        self, tracking_env: None, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Listed cards are printed as a table."""
        seen: dict[str, Any] = {}

        async def fake_list(config: Any, registry: str, **kwargs: Any) -> ListCardResponse:
            seen.update(kwargs, registry=registry)
            return ListCardResponse(
                cards=[CardSummary(name="clf", repository="team", version="1.2.0", uid="uid-1")]
            )

        monkeypatch.setattr(cli, "list_cards", fake_list)
        code = cli.main(
            ["list-cards", "--registry", "model", "--tag-name", "team", "--tag-value", "ml", "--limit", "5"]
        )
        assert code == 0
        assert seen["tags"] == {"team": "ml"}
        assert seen["limit"] == 5
        assert "uid-1" in capsys.readouterr().out

    def test_download_model(
        self,
        tracking_env: None,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Flags become modifiers and config overrides; metrics file is written."""
        seen: dict[str, Any] = {}

        async def fake_download(config: Any, query: Any, write_dir: Path, **kwargs: Any) -> DownloadResult:
            seen.update(config=config, query=query, write_dir=write_dir, **kwargs)
            manifest = DownloadManifest(
                "clf", "1.2.0", "uid-1", [FileEntry("root/model.joblib", "model.joblib", 1, "sha256:00")]
            )
            return DownloadResult(card=_card(), manifest=manifest, destination=write_dir, duration_s=0.1)

        monkeypatch.setattr(cli, "download_model", fake_download)
        metrics_file = tmp_path / "metrics.prom"
        code = cli.main(
            [
                "download-model",
                "--name", "clf",
                "--onnx", "--quantize", "--preprocessor",
                "--workers", "2",
                "--deadline-s", "30",
                "--write-dir", str(tmp_path / "out"),
                "--metrics-file", str(metrics_file),
            ]
        )

        assert code == 0
        assert seen["query"].modifiers.quantize
        assert seen["query"].modifiers.preprocessor
        assert seen["config"].max_workers == 2
        assert seen["config"].deadline_s == 30.0
        assert seen["write_dir"] == tmp_path / "out"
        assert "opsml_cli_session_success" in metrics_file.read_text()
        assert "Downloaded" in capsys.readouterr().out

    def test_get_model_metrics(
        self, tracking_env: None, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Metrics are printed as a table."""

        async def fake_metrics(config: Any, uid: str, **kwargs: Any) -> ListMetricResponse:
            return ListMetricResponse.model_validate({"metric": [{"run_uid": uid, "name": "mae", "value": 5}]})

        monkeypatch.setattr(cli, "get_model_metrics", fake_metrics)
        assert cli.main(["get-model-metrics", "--uid", "run-1"]) == 0
        assert "mae" in capsys.readouterr().out
