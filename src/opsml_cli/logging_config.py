"""
Logging setup for opsml-cli.

Every log line passes through a scrubber before it is written:
- credential fields (token, authorization, signature, ...) are dropped
- ``url`` fields are reduced to their path, since presigned object URLs
  carry signatures in the query string
- request/response bodies and long lists are summarized, never dumped
- free text has URLs, bearer tokens and signature fragments masked

Usage:
    from opsml_cli.logging_config import setup_logging, get_logger

    setup_logging(json_format=True)
    logger = get_logger(__name__)
    logger.info("Fetched file", extra={"file": "model.onnx", "size": 1024})
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

import orjson

MAX_NESTING = 3
MAX_LIST_ITEMS = 10

_URL_IN_TEXT = re.compile(r"(https?://[^\s\"'<>]+)")
_TEXT_MASKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    (re.compile(r"(authorization|auth)[=:\s]+['\"]?[\w\-\.\s]+['\"]?", re.I), "[AUTH]"),
    # Signature params that survived URL reduction (e.g. a bare query string)
    (re.compile(r"\b(x-amz-signature|signature|sig)=[\w%\-\.]+", re.I), "[SIGNATURE]"),
)

# Any extra key containing one of these is dropped
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "token",
        "password",
        "secret",
        "auth",
        "authorization",
        "bearer",
        "credential",
        "signature",
        "api_key",
        "cookie",
    }
)

# Extra keys replaced by a placeholder (``url`` becomes ``endpoint``)
HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "headers": "[HEADERS]",
    "params": "[PARAMS]",
}

# Attributes every LogRecord has; anything else came in via ``extra``
_STANDARD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _normalize_url(url: str) -> str:
    """Reduce a URL to its path ("/" for a bare host)."""
    return urlsplit(url).path or "/"


def _mask_url(match: re.Match[str]) -> str:
    path = _normalize_url(match.group(1))
    return "[URL]" if path == "/" else path


def _sanitize_text(text: str) -> str:
    """Mask URLs, bearer tokens, auth headers and signatures in free text."""
    if not text:
        return text
    text = _URL_IN_TEXT.sub(_mask_url, text)
    for pattern, mask in _TEXT_MASKS:
        text = pattern.sub(mask, text)
    return text


def _scrub_value(value: Any, depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _sanitize_text(value)
    if isinstance(value, dict):
        return _filter_log_record(value, _depth=depth + 1)
    if isinstance(value, (list, tuple)):
        if len(value) > MAX_LIST_ITEMS:
            return f"[list:{len(value)} items]"
        return [_sanitize_text(v) if isinstance(v, str) else v for v in value]
    return _sanitize_text(str(value))


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Return a copy of ``record`` safe to write to a log.

    Nested dicts are scrubbed the same way, down to MAX_NESTING levels.
    """
    if _depth > MAX_NESTING:
        return {"_truncated": "max depth exceeded"}

    scrubbed: dict[str, Any] = {}
    for key, value in record.items():
        lowered = key.lower()
        if any(word in lowered for word in BLOCKED_FIELDS):
            continue
        placeholder = HIGH_CARDINALITY_FIELDS.get(lowered)
        if placeholder is None:
            scrubbed[key] = _scrub_value(value, _depth)
        elif lowered == "url" and isinstance(value, str):
            scrubbed[placeholder] = _normalize_url(value)
        else:
            scrubbed[key] = placeholder
    return scrubbed


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    {"ts": "...+00:00", "level": "INFO", "logger": "opsml_cli.download.engine", "msg": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry["file"] = record.filename
            entry["line"] = record.lineno
        if record.exc_info:
            entry["exc"] = _sanitize_text(self.formatException(record.exc_info))

        entry.update(_filter_log_record(_extra_fields(record)))
        return orjson.dumps(entry, default=str).decode()


class SimpleFormatter(logging.Formatter):
    """``LEVEL    logger: message | key=value ...`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"

        fields = _filter_log_record(_extra_fields(record))
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + _sanitize_text(self.formatException(record.exc_info))
        return line


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
) -> None:
    """Install a single scrubbing handler on the root logger.

    Args:
        level: Root log level.
        json_format: JSON lines instead of readable text.
        stream: Output stream (default stderr, keeping stdout for command output).
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (pass ``__name__``)."""
    return logging.getLogger(name)
