"""
Command line interface for an OpsML server.

Usage:
    opsml-cli list-cards --registry model --name my-model
    opsml-cli download-model --name my-model --repository team --version 1.*
    opsml-cli download-model --uid 8f2c... --onnx --quantize --preprocessor
    opsml-cli download-model-metadata --name my-model --repository team
    opsml-cli get-model-metrics --uid 8f2c...
    opsml-cli version
    opsml-cli info

Environment:
    OPSML_TRACKING_URI   Registry base url (required)
    OPSML_TOKEN          Bearer credential (optional)

Exit codes follow opsml_cli.errors (0 on success).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from opsml_cli.config import ClientConfig
from opsml_cli.download.pipeline import download_model, download_model_metadata
from opsml_cli.download.resolver import Query
from opsml_cli.errors import OpsmlCliError
from opsml_cli.listing import (
    VALID_REGISTRIES,
    card_table,
    get_model_metrics,
    list_cards,
    metric_table,
    parse_tags,
)
from opsml_cli.logging_config import setup_logging
from opsml_cli.metrics import DownloadMetrics
from opsml_cli.registry.manifest import DownloadModifiers

logger = logging.getLogger(__name__)

DIST_NAME = "opsml-cli"

LOGO_TEXT = """
 ██████  ██████  ███████ ███    ███ ██             ██████ ██      ██
██    ██ ██   ██ ██      ████  ████ ██            ██      ██      ██
██    ██ ██████  ███████ ██ ████ ██ ██      █████ ██      ██      ██
██    ██ ██           ██ ██  ██  ██ ██            ██      ██      ██
 ██████  ██      ███████ ██      ██ ███████        ██████ ███████ ██
"""


def package_version() -> str:
    """Installed distribution version."""
    try:
        return version(DIST_NAME)
    except PackageNotFoundError:
        return "unknown"


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _add_query_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", type=str, help="Card name")
    parser.add_argument("--repository", type=str, help="Card repository")
    parser.add_argument(
        "--version",
        type=str,
        help="Card version or hint (1.2.3, 1.*, ^1.2.0, latest; default: latest)",
    )
    parser.add_argument("--uid", type=str, help="Card uid (instead of name/repository/version)")
    parser.add_argument(
        "--ignore-release-candidates",
        action="store_true",
        help="Skip prerelease versions when resolving a version hint",
    )
    parser.add_argument(
        "--write-dir",
        type=Path,
        default=Path("models"),
        help="Directory to write to (default: models)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="opsml-cli",
        description="CLI tool for interacting with an OpsML server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Log output format on stderr (default: text)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    # list-cards
    list_parser = subparsers.add_parser("list-cards", help="List cards from a registry")
    list_parser.add_argument(
        "--registry",
        type=str,
        required=True,
        help=f"Registry to list from ({', '.join(VALID_REGISTRIES)})",
    )
    list_parser.add_argument("--name", type=str, help="Card name")
    list_parser.add_argument("--repository", type=str, help="Card repository")
    list_parser.add_argument("--version", type=str, help="Card version")
    list_parser.add_argument("--uid", type=str, help="Card uid")
    list_parser.add_argument("--limit", type=int, help="Maximum number of cards")
    list_parser.add_argument("--tag-name", type=_csv, help="Comma separated tag names")
    list_parser.add_argument("--tag-value", type=_csv, help="Comma separated tag values")
    list_parser.add_argument("--max-date", type=str, help="Latest card date (YYYY-MM-DD)")
    list_parser.add_argument(
        "--ignore-release-candidates",
        action="store_true",
        help="Exclude release candidates",
    )

    # download-model
    model_parser = subparsers.add_parser(
        "download-model", help="Download a model and its companion files"
    )
    _add_query_arguments(model_parser)
    model_parser.add_argument("--onnx", action="store_true", help="Also download the ONNX model")
    model_parser.add_argument(
        "--quantize",
        action="store_true",
        help="Download the quantized ONNX model (requires --onnx)",
    )
    model_parser.add_argument(
        "--preprocessor",
        action="store_true",
        help="Also download the preprocessor (tokenizer or feature extractor)",
    )
    model_parser.add_argument("--workers", type=int, help="Concurrent file downloads")
    model_parser.add_argument("--max-retries", type=int, help="Retries per file (default: 3)")
    model_parser.add_argument("--deadline-s", type=float, help="Overall deadline in seconds")
    model_parser.add_argument(
        "--staging-dir",
        type=Path,
        help="New staging directory, or one kept by a timed-out run to resume it",
    )
    model_parser.add_argument(
        "--metrics-file",
        type=Path,
        help="Write Prometheus metrics to this file after the run",
    )

    # download-model-metadata
    metadata_parser = subparsers.add_parser(
        "download-model-metadata", help="Download model metadata as JSON"
    )
    _add_query_arguments(metadata_parser)

    # get-model-metrics
    metrics_parser = subparsers.add_parser("get-model-metrics", help="Show metrics logged for a run")
    metrics_parser.add_argument("--uid", type=str, required=True, help="Run uid")

    subparsers.add_parser("version", help="Show opsml-cli version")
    subparsers.add_parser("info", help="Show opsml-cli info")

    return parser


def _query_from_args(args: argparse.Namespace, modifiers: DownloadModifiers | None = None) -> Query:
    return Query(
        name=args.name,
        repository=args.repository,
        version=args.version,
        uid=args.uid,
        ignore_release_candidates=args.ignore_release_candidates,
        modifiers=modifiers or DownloadModifiers(),
    )


def run_list_cards(args: argparse.Namespace, console: Console) -> int:
    config = ClientConfig.from_env()
    response = asyncio.run(
        list_cards(
            config,
            args.registry,
            name=args.name,
            repository=args.repository,
            version=args.version,
            uid=args.uid,
            limit=args.limit,
            tags=parse_tags(args.tag_name, args.tag_value),
            max_date=args.max_date,
            ignore_release_candidates=args.ignore_release_candidates,
        )
    )
    if not response.cards:
        console.print("[yellow]No cards found[/yellow]")
        return 0
    console.print(card_table(response))
    return 0


def run_download_model(args: argparse.Namespace, console: Console) -> int:
    modifiers = DownloadModifiers(onnx=args.onnx, preprocessor=args.preprocessor, quantize=args.quantize)
    query = _query_from_args(args, modifiers)
    query.validate()

    config = ClientConfig.from_env(
        max_workers=args.workers,
        max_retries=args.max_retries,
        deadline_s=args.deadline_s,
    )
    metrics = DownloadMetrics()
    try:
        result = asyncio.run(
            download_model(
                config,
                query,
                args.write_dir,
                staging_dir=args.staging_dir,
                metrics=metrics,
            )
        )
    finally:
        if args.metrics_file:
            metrics.write_textfile(args.metrics_file)

    console.print(
        f"[green]Downloaded[/green] {escape(result.card.name)} "
        f"[bold]{escape(result.card.version)}[/bold] "
        f"({len(result.manifest.entries)} file(s)) to {escape(str(result.destination))}"
    )
    return 0


def run_download_metadata(args: argparse.Namespace, console: Console) -> int:
    query = _query_from_args(args)
    query.validate()
    config = ClientConfig.from_env()
    path = asyncio.run(download_model_metadata(config, query, args.write_dir))
    console.print(f"[green]Model metadata written to[/green] {escape(str(path))}")
    return 0


def run_get_model_metrics(args: argparse.Namespace, console: Console) -> int:
    config = ClientConfig.from_env()
    response = asyncio.run(get_model_metrics(config, args.uid))
    console.print(metric_table(response))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_format == "json",
    )
    console = Console()
    err_console = Console(stderr=True)

    handlers = {
        "list-cards": run_list_cards,
        "download-model": run_download_model,
        "download-model-metadata": run_download_metadata,
        "get-model-metrics": run_get_model_metrics,
    }

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "version":
        console.print(f"opsml-cli version [bold green]{package_version()}[/bold green]")
        return 0
    if args.command == "info":
        console.print(f"\n[green]{LOGO_TEXT}[/green]")
        console.print(f"opsml-cli version [bold purple]{package_version()}[/bold purple]\n")
        return 0

    try:
        return handlers[args.command](args, console)
    except OpsmlCliError as e:
        logger.debug("Command failed", extra={"command": args.command, "error_type": type(e).__name__})
        err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
