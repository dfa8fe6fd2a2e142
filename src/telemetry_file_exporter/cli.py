"""Click CLI for the telemetry file exporter.

Entry point registered in ``pyproject.toml`` as ``telemetry-file-exporter``.

Reads NDJSON telemetry records (``{"signal", "resource", "body"}`` per line)
from a file or stdin and writes them through :class:`FileExporter`::

    telemetry-file-exporter -c config.json records.ndjson
    producer | telemetry-file-exporter -c config.json -
    telemetry-file-exporter -c config.json --validate-config
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from dataclasses import replace
from typing import IO, Iterator, Optional

import click
import orjson

from telemetry_file_exporter import __version__
from telemetry_file_exporter.config import AppConfig, load_config
from telemetry_file_exporter.errors import ConfigError, ResourceError
from telemetry_file_exporter.exporter import FileExporter
from telemetry_file_exporter.models import ExportResult, TelemetryRecord

logger = logging.getLogger("telemetry_file_exporter")

DEFAULT_CONFIG = "/etc/telemetry-file-exporter/config.json"

EXIT_CONFIG_ERROR = 1
EXIT_EXPORT_FAILURES = 2

_HANDLER_NAME = "telemetry-file-exporter"


# ── structured JSON log formatter ───────────────────────────────────


# destination context attached via ``extra=`` by the exporter
_CONTEXT_FIELDS = ("path", "signal", "records")


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON to stderr."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                obj[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj, default=str).decode()


def _setup_logging(level: str, fmt: str = "json") -> None:
    """Configure the root logger on stderr, JSON or plain text."""
    root = logging.getLogger()
    level = "warning" if level.lower() == "warn" else level
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if fmt == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    else:
        handler.setFormatter(_JsonFormatter())
    root.addHandler(handler)


# ── input ───────────────────────────────────────────────────────────


def _read_batches(
    stream: IO[bytes],
    batch_size: int,
    stop: threading.Event,
    result: ExportResult,
) -> Iterator[list[TelemetryRecord]]:
    """Yield lists of up to *batch_size* records; bad lines count as failed."""
    batch: list[TelemetryRecord] = []
    for lineno, line in enumerate(stream, start=1):
        if stop.is_set():
            break
        if not line.strip():
            continue
        try:
            raw = orjson.loads(line)
            if not isinstance(raw, dict):
                raise TypeError(f"expected an object, got {type(raw).__name__}")
            batch.append(TelemetryRecord.from_dict(raw))
        except (orjson.JSONDecodeError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed input line %d: %s", lineno, exc)
            result.record_failure(1, f"<input:{lineno}>", str(exc))
            continue
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


# ── main command ────────────────────────────────────────────────────


@click.command()
@click.argument("input_file", type=click.File("rb"), default="-")
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path.")
@click.option("-p", "--path", "path_override", default=None,
              help="Override the exporter base output path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--batch-size", default=100, show_default=True,
              type=click.IntRange(min=1), help="Records per export batch.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
def main(
    input_file: IO[bytes],
    config_path: Optional[str],
    path_override: Optional[str],
    log_level: Optional[str],
    batch_size: int,
    validate_only: bool,
) -> None:
    """Telemetry file exporter: NDJSON records to rotating files on disk."""
    cfg_path = config_path or os.environ.get("TFE_CONFIG", DEFAULT_CONFIG)

    try:
        cfg = load_config(cfg_path)
        if path_override:
            cfg = replace(cfg, exporter=replace(cfg.exporter, path=path_override).validate())
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    effective_level = (
        log_level
        or os.environ.get("TFE_LOG_LEVEL")
        or cfg.logging.level
    )
    _setup_logging(effective_level, cfg.logging.format)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info("Starting telemetry-file-exporter %s", __version__)
    result = _run(cfg, input_file, batch_size)

    click.echo(
        f"written={result.written} discarded={result.discarded} failed={result.failed}",
        err=True,
    )
    if result.failed:
        raise SystemExit(EXIT_EXPORT_FAILURES)


def _run(cfg: AppConfig, stream: IO[bytes], batch_size: int) -> ExportResult:
    """Feed *stream* through a started exporter and shut it down."""
    stop = threading.Event()

    def _handle_signal(signum, frame) -> None:
        logger.info("Received shutdown signal")
        stop.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, _handle_signal)

    total = ExportResult()
    exporter = FileExporter(cfg.exporter)
    exporter.start()
    try:
        for batch in _read_batches(stream, batch_size, stop, total):
            total.merge(exporter.export(batch))
    finally:
        try:
            exporter.shutdown()
        except ResourceError as exc:
            logger.error("Shutdown incomplete: %s", exc)
            total.errors.append(str(exc))
            total.failed = max(total.failed, 1)
        logger.info(
            "Exporter shut down (written=%d, discarded=%d, failed=%d)",
            total.written,
            total.discarded,
            total.failed,
        )
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
    return total
