"""Map a telemetry record to its destination file path.

Decision chain (evaluated in order)::

    1. grouping disabled                          → base path
    2. attribute present and non-empty            → base path + value
    3. attribute missing, discard flag set        → DISCARD
    4. otherwise                                  → base path + default sub-path

The resolver never touches the filesystem; directory creation is left to
the handle pool.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Union

from telemetry_file_exporter.config import ExporterConfig
from telemetry_file_exporter.errors import ResourceError
from telemetry_file_exporter.models import TelemetryRecord

logger = logging.getLogger(__name__)


class _Discard:
    """Sentinel type returned for records that must be dropped."""

    _instance = None

    def __new__(cls) -> "_Discard":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DISCARD"


DISCARD = _Discard()


@dataclass(frozen=True)
class PathDecision:
    """Where *record* goes.  ``record`` already has the routing attribute
    stripped when ``delete_sub_path_resource_attribute`` is set."""

    path: str
    record: TelemetryRecord


def resolve(record: TelemetryRecord, config: ExporterConfig) -> Union[PathDecision, _Discard]:
    """Resolve the destination of *record*.

    The input record is never mutated; when the routing attribute must be
    deleted a copy with a new ``resource`` mapping is returned in the
    decision.

    Raises
    ------
    ResourceError
        If the attribute value would place the file outside the base
        path's directory.
    """
    grp = config.group_by_attribute
    if grp is None:
        return PathDecision(path=config.path, record=record)

    attr = grp.sub_path_resource_attribute
    value = record.resource.get(attr)
    if value is None or value == "":
        if grp.discard_if_attribute_not_found:
            logger.debug("Discarding %s record: attribute %s not found", record.signal, attr)
            return DISCARD
        sub_path = grp.default_sub_path
    else:
        sub_path = str(value)
        if grp.delete_sub_path_resource_attribute:
            resource = {k: v for k, v in record.resource.items() if k != attr}
            record = replace(record, resource=resource)

    return PathDecision(path=_join(config.path, sub_path), record=record)


def _join(base: str, sub_path: str) -> str:
    """Append *sub_path* to *base*, refusing results that escape its directory."""
    full = os.path.normpath(base + sub_path)
    root = os.path.abspath(os.path.dirname(base) or os.curdir)
    if os.path.commonpath([root, os.path.abspath(full)]) != root:
        raise ResourceError(f"sub-path {sub_path!r} escapes {root}", path=full)
    return full
