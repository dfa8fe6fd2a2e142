"""Dataclass models for telemetry records and export results.

Records are designed to be serializable via :meth:`TelemetryRecord.to_dict`
followed by ``orjson.dumps()`` or a protobuf ``Struct``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

SIGNALS = ("logs", "metrics", "traces")


@dataclass
class TelemetryRecord:
    """One unit of telemetry as delivered by the upstream pipeline.

    Only ``resource`` is inspected by the exporter (for routing); ``body``
    is handed to the serializer untouched.
    """

    signal: str = "logs"
    resource: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"signal": self.signal, "resource": self.resource, "body": self.body}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TelemetryRecord":
        """Build a record from its dict form, ignoring unknown keys."""
        return cls(
            signal=raw.get("signal", "logs"),
            resource=dict(raw.get("resource") or {}),
            body=dict(raw.get("body") or {}),
        )


class ExportStatus(enum.Enum):
    """Overall outcome of one :meth:`FileExporter.export` call."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ExportResult:
    """Per-batch accounting returned to the upstream pipeline.

    Discarded records are counted separately and never make a batch fail.
    """

    written: int = 0
    discarded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> ExportStatus:
        if self.failed == 0:
            return ExportStatus.SUCCESS
        if self.written == 0:
            return ExportStatus.FAILURE
        return ExportStatus.PARTIAL

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_failure(self, count: int, path: str, reason: str) -> None:
        self.failed += count
        self.errors.append(f"{path}: {reason}")

    def merge(self, other: "ExportResult") -> None:
        self.written += other.written
        self.discarded += other.discarded
        self.failed += other.failed
        self.errors.extend(other.errors)
