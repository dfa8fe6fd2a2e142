"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

An absent ``rotation`` section disables rotation entirely, and an absent
``group_by_attribute`` section disables per-record routing.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from telemetry_file_exporter.errors import ConfigError

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

FORMAT_JSON = "json"
FORMAT_PROTO = "proto"
FORMATS = (FORMAT_JSON, FORMAT_PROTO)

COMPRESSION_ZSTD = "zstd"
COMPRESSIONS = ("", COMPRESSION_ZSTD)

DEFAULT_FLUSH_INTERVAL = 1.0
DEFAULT_MAX_MEGABYTES = 100
DEFAULT_MAX_BACKUPS = 100
DEFAULT_MAX_OPEN_FILES = 100
DEFAULT_SUB_PATH = "MISSING"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class RotationConfig:
    """Size/age/count limits for rolling output files.

    ``max_days`` and ``max_backups`` of ``0`` mean unlimited.
    """

    max_megabytes: int = DEFAULT_MAX_MEGABYTES
    max_days: int = 0
    max_backups: int = DEFAULT_MAX_BACKUPS
    localtime: bool = False


@dataclass(frozen=True)
class GroupByAttributeConfig:
    """Routing of records into separate files by a resource attribute."""

    sub_path_resource_attribute: str = ""
    delete_sub_path_resource_attribute: bool = False
    max_open_files: int = DEFAULT_MAX_OPEN_FILES
    discard_if_attribute_not_found: bool = False
    default_sub_path: str = DEFAULT_SUB_PATH
    auto_create_directories: bool = True


@dataclass(frozen=True)
class ExporterConfig:
    """Everything the exporter core needs, threaded through constructors."""

    path: str = ""
    rotation: Optional[RotationConfig] = None
    format: str = FORMAT_JSON
    compression: str = ""
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    group_by_attribute: Optional[GroupByAttributeConfig] = None

    @property
    def max_open_files(self) -> int:
        """Handle-pool capacity; a single file when routing is disabled."""
        if self.group_by_attribute is None:
            return 1
        return self.group_by_attribute.max_open_files

    @property
    def auto_create_directories(self) -> bool:
        if self.group_by_attribute is None:
            return True
        return self.group_by_attribute.auto_create_directories

    def validate(self) -> "ExporterConfig":
        """Check the configuration and return it unchanged.

        Raises
        ------
        ConfigError
            On the first violation found.
        """
        if not self.path:
            raise ConfigError("path must be non-empty")
        if self.format not in FORMATS:
            raise ConfigError(f"format type is not supported: {self.format!r}")
        if self.compression not in COMPRESSIONS:
            raise ConfigError(f"compression is not supported: {self.compression!r}")
        if self.flush_interval < 0:
            raise ConfigError("flush_interval must not be negative")

        rot = self.rotation
        if rot is not None:
            for name in ("max_megabytes", "max_days", "max_backups"):
                if getattr(rot, name) < 0:
                    raise ConfigError(f"rotation.{name} must not be negative")

        grp = self.group_by_attribute
        if grp is not None:
            if not grp.sub_path_resource_attribute:
                raise ConfigError(
                    "group_by_attribute.sub_path_resource_attribute must be non-empty"
                )
            if grp.max_open_files < 1:
                raise ConfigError("group_by_attribute.max_open_files must be at least 1")
        return self


@dataclass(frozen=True)
class LoggingConfig:
    """Operational logging settings."""

    level: str = "info"
    format: str = "json"


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    exporter: ExporterConfig = field(default_factory=ExporterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def parse_duration(value: Any) -> float:
    """Convert *value* to seconds.

    Numbers are taken as seconds; strings use Go duration syntax
    (``"1s"``, ``"250ms"``, ``"1m30s"``).

    Raises
    ------
    ConfigError
        If *value* is negative or not a recognizable duration.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        negative = text.startswith("-")
        text = text.lstrip("+-")
        if text == "0":
            return 0.0
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART_RE.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if not text or pos != len(text):
            raise ConfigError(f"invalid duration: {value!r}")
        if negative:
            seconds = -seconds
    else:
        raise ConfigError(f"invalid duration: {value!r}")

    if seconds < 0:
        raise ConfigError("flush_interval must not be negative")
    return seconds


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ConfigError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _known_fields(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def exporter_config_from_dict(raw: dict[str, Any]) -> ExporterConfig:
    """Convert the raw ``exporter`` section into a validated :class:`ExporterConfig`."""
    rotation = None
    if raw.get("rotation") is not None:
        rotation = RotationConfig(**_known_fields(RotationConfig, raw["rotation"]))
        if rotation.max_megabytes == 0:
            rotation = replace(rotation, max_megabytes=DEFAULT_MAX_MEGABYTES)

    group_by = None
    if raw.get("group_by_attribute") is not None:
        group_by = GroupByAttributeConfig(
            **_known_fields(GroupByAttributeConfig, raw["group_by_attribute"])
        )

    flush_interval = parse_duration(raw.get("flush_interval", 0))
    if flush_interval == 0:
        flush_interval = DEFAULT_FLUSH_INTERVAL

    return ExporterConfig(
        path=raw.get("path", ""),
        rotation=rotation,
        format=raw.get("format", FORMAT_JSON),
        compression=raw.get("compression", ""),
        flush_interval=flush_interval,
        group_by_attribute=group_by,
    ).validate()


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = raw.get("logging", {})
    return AppConfig(
        exporter=exporter_config_from_dict(raw.get("exporter", {})),
        logging=LoggingConfig(**_known_fields(LoggingConfig, logging_raw)),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to the JSON config file.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to the
        ``config.schema.json`` shipped with the package.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ConfigError
        If the file is unreadable, a required ``${VAR}`` cannot be resolved,
        or the config fails schema or semantic validation.
    """
    try:
        raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    # --- schema validation ---
    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        try:
            jsonschema.validate(instance=interpolated, schema=schema)
        except jsonschema.ValidationError as exc:
            location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigError(f"{location}: {exc.message}") from exc
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
