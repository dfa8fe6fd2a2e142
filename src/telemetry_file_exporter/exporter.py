"""Exporter facade: batch in, records on disk, :class:`ExportResult` out.

Per batch::

    resolve each record → group by destination path → encode + compress
    each group → acquire handle → rotating write → release handle

Failures are isolated per destination: an encoding, open or write error
fails only the records of that group.  Nothing is retried here; that is
the upstream pipeline's decision.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from telemetry_file_exporter.config import ExporterConfig
from telemetry_file_exporter.encoding import Encoder
from telemetry_file_exporter.errors import EncodingError, ResourceError
from telemetry_file_exporter.flush import FlushScheduler
from telemetry_file_exporter.models import ExportResult, TelemetryRecord
from telemetry_file_exporter.pool import HandlePool
from telemetry_file_exporter.resolver import DISCARD, resolve
from telemetry_file_exporter.rotation import RotationPolicy
from telemetry_file_exporter.sink import RotatingFileSink

logger = logging.getLogger(__name__)


class FileExporter:
    """Thread-safe file exporter for telemetry batches.

    Parameters
    ----------
    config:
        Validated exporter configuration.
    pool:
        Optional pre-built handle pool (tests inject small ones).
    """

    def __init__(self, config: ExporterConfig, pool: Optional[HandlePool] = None) -> None:
        self._config = config.validate()
        self._encoder = Encoder(config.format, config.compression)
        if pool is None:
            pool = HandlePool(
                max_open_files=config.max_open_files,
                auto_create_directories=config.auto_create_directories,
            )
        self._pool = pool
        self._sink = RotatingFileSink(self._pool, RotationPolicy.from_config(config.rotation))
        self._flusher = FlushScheduler(self._pool, config.flush_interval)
        self._state_lock = threading.Lock()
        self._shut_down = False

    @property
    def config(self) -> ExporterConfig:
        return self._config

    @property
    def pool(self) -> HandlePool:
        return self._pool

    @property
    def encoder(self) -> Encoder:
        return self._encoder

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic flusher."""
        self._flusher.start()
        logger.info(
            "File exporter started (path=%s, format=%s, compression=%s, rotation=%s)",
            self._config.path,
            self._config.format,
            self._config.compression or "none",
            "on" if self._config.rotation else "off",
        )

    def shutdown(self) -> None:
        """Stop flushing, drain in-flight writes, then flush and close all files.

        Raises
        ------
        ResourceError
            If any file failed to flush or close.
        """
        with self._state_lock:
            if self._shut_down:
                return
            self._shut_down = True
        self._flusher.stop()
        self._pool.close_all()
        logger.info("File exporter shut down")

    def __enter__(self) -> "FileExporter":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ── export ──────────────────────────────────────────────────────

    def export(self, batch: Iterable[TelemetryRecord]) -> ExportResult:
        """Write *batch*, returning per-batch success/discard/failure counts."""
        records = list(batch)
        result = ExportResult()
        if self._shut_down:
            result.record_failure(len(records), self._config.path, "exporter is shut down")
            return result

        groups: dict[str, list[TelemetryRecord]] = {}
        for record in records:
            try:
                decision = resolve(record, self._config)
            except ResourceError as exc:
                result.record_failure(1, exc.path or self._config.path, str(exc))
                continue
            if decision is DISCARD:
                result.discarded += 1
                continue
            groups.setdefault(decision.path, []).append(decision.record)

        for path, group in groups.items():
            self._write_group(path, group, result)

        if result.failed:
            logger.warning(
                "Export finished with failures: written=%d failed=%d discarded=%d (%s)",
                result.written,
                result.failed,
                result.discarded,
                result.errors[0],
            )
        return result

    def _write_group(self, path: str, group: list[TelemetryRecord], result: ExportResult) -> None:
        try:
            data = self._encoder.encode_unit(group)
        except EncodingError as exc:
            logger.error(
                "Dropping %d record(s) for %s: %s", len(group), path, exc,
                extra=_log_context(path, group),
            )
            result.record_failure(len(group), path, str(exc))
            return

        try:
            entry = self._pool.acquire(path)
        except ResourceError as exc:
            logger.error("Cannot open %s: %s", path, exc, extra=_log_context(path, group))
            result.record_failure(len(group), path, str(exc))
            return

        try:
            self._sink.write(entry, data)
        except (OSError, ResourceError) as exc:
            logger.error("Write to %s failed: %s", path, exc, extra=_log_context(path, group))
            result.record_failure(len(group), path, str(exc))
            self._pool.invalidate(entry)
        else:
            result.written += len(group)
        finally:
            self._pool.release(entry)


def _log_context(path: str, group: list[TelemetryRecord]) -> dict:
    """``extra=`` fields for a per-destination log line."""
    signals = {record.signal for record in group}
    return {
        "path": path,
        "records": len(group),
        "signal": signals.pop() if len(signals) == 1 else None,
    }
