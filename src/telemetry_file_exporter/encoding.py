"""Serialize record batches into write units and optionally compress them.

Formats (mutually exclusive)::

    json   one orjson-serialized record per line
    proto  the whole batch as a protobuf ``google.protobuf.ListValue``;
           numbers are doubles, so integers beyond ±2**53 are rejected

Compression (``zstd``) is applied to each write unit independently, never
to the file as a stream.  On disk a unit is either

* raw NDJSON lines (``json`` without compression), or
* a frame: 4-byte big-endian payload length followed by the payload
  (``proto``, or any compressed unit).

so every frame in a file that has not yet been rotated can be decoded on
its own.
"""

from __future__ import annotations

import struct
from typing import Iterable, Iterator

import orjson
import zstandard
from google.protobuf import json_format, struct_pb2
from google.protobuf.message import DecodeError

from telemetry_file_exporter.config import COMPRESSION_ZSTD, FORMAT_JSON, FORMAT_PROTO
from telemetry_file_exporter.errors import ConfigError, EncodingError
from telemetry_file_exporter.models import TelemetryRecord

ZSTD_LEVEL = 3

_FRAME_HEADER = struct.Struct(">I")


# ── marshalers ──────────────────────────────────────────────────────


def _marshal_json(records: Iterable[TelemetryRecord]) -> bytes:
    return b"".join(
        orjson.dumps(r.to_dict(), option=orjson.OPT_APPEND_NEWLINE) for r in records
    )


def _unmarshal_json(data: bytes) -> list[TelemetryRecord]:
    return [
        TelemetryRecord.from_dict(orjson.loads(line))
        for line in data.splitlines()
        if line.strip()
    ]


# google.protobuf.Value stores every number as a double
_MAX_EXACT_INT = 2 ** 53


def _check_exact_numbers(value, where: str = "record") -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _check_exact_numbers(item, f"{where}.{key}")
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_exact_numbers(item, f"{where}[{i}]")
    elif isinstance(value, int) and not isinstance(value, bool) and abs(value) > _MAX_EXACT_INT:
        raise ValueError(f"{where}: integer outside ±2**53 would lose precision")


def _marshal_proto(records: Iterable[TelemetryRecord]) -> bytes:
    items = [r.to_dict() for r in records]
    for item in items:
        _check_exact_numbers(item)
    msg = struct_pb2.ListValue()
    msg.extend(items)
    return msg.SerializeToString()


def _unmarshal_proto(data: bytes) -> list[TelemetryRecord]:
    msg = struct_pb2.ListValue()
    msg.ParseFromString(data)
    return [TelemetryRecord.from_dict(item) for item in json_format.MessageToDict(msg)]


_MARSHALERS = {
    FORMAT_JSON: (_marshal_json, _unmarshal_json),
    FORMAT_PROTO: (_marshal_proto, _unmarshal_proto),
}


def encode(records: Iterable[TelemetryRecord], fmt: str) -> bytes:
    """Serialize *records* in format *fmt*.

    Raises
    ------
    EncodingError
        If a record holds a value the format cannot represent.
    """
    try:
        marshal, _ = _MARSHALERS[fmt]
    except KeyError:
        raise ConfigError(f"format type is not supported: {fmt!r}") from None
    try:
        return marshal(records)
    except (TypeError, ValueError, AttributeError, OverflowError) as exc:
        raise EncodingError(f"cannot encode batch as {fmt}: {exc}") from exc


def decode(data: bytes, fmt: str) -> list[TelemetryRecord]:
    """Inverse of :func:`encode`."""
    try:
        _, unmarshal = _MARSHALERS[fmt]
    except KeyError:
        raise ConfigError(f"format type is not supported: {fmt!r}") from None
    try:
        return unmarshal(data)
    except (orjson.JSONDecodeError, DecodeError, TypeError, ValueError) as exc:
        raise EncodingError(f"cannot decode {fmt} data: {exc}") from exc


# ── compression ─────────────────────────────────────────────────────


def compress(data: bytes, codec: str) -> bytes:
    """Compress *data* as one self-contained block; identity when *codec* is empty."""
    if not codec:
        return data
    if codec != COMPRESSION_ZSTD:
        raise ConfigError(f"compression is not supported: {codec!r}")
    try:
        return zstandard.ZstdCompressor(level=ZSTD_LEVEL).compress(data)
    except zstandard.ZstdError as exc:
        raise EncodingError(f"zstd compression failed: {exc}") from exc


def decompress(data: bytes, codec: str) -> bytes:
    if not codec:
        return data
    if codec != COMPRESSION_ZSTD:
        raise ConfigError(f"compression is not supported: {codec!r}")
    try:
        return zstandard.ZstdDecompressor().decompress(data)
    except zstandard.ZstdError as exc:
        raise EncodingError(f"zstd decompression failed: {exc}") from exc


# ── write units ─────────────────────────────────────────────────────


class Encoder:
    """Turns a record batch into the exact bytes handed to a sink.

    Parameters
    ----------
    fmt:
        ``"json"`` or ``"proto"``.
    compression:
        ``""`` or ``"zstd"``.
    """

    def __init__(self, fmt: str = FORMAT_JSON, compression: str = "") -> None:
        if fmt not in _MARSHALERS:
            raise ConfigError(f"format type is not supported: {fmt!r}")
        if compression not in ("", COMPRESSION_ZSTD):
            raise ConfigError(f"compression is not supported: {compression!r}")
        self.format = fmt
        self.compression = compression

    @property
    def framed(self) -> bool:
        """True when units are written length-prefixed."""
        return self.format == FORMAT_PROTO or bool(self.compression)

    def encode_unit(self, records: Iterable[TelemetryRecord]) -> bytes:
        """Encode, compress and frame one batch.

        Raises
        ------
        EncodingError
            On serialization or compression failure.
        """
        payload = compress(encode(records, self.format), self.compression)
        if not self.framed:
            return payload
        return _FRAME_HEADER.pack(len(payload)) + payload

    def decode_units(self, data: bytes) -> list[TelemetryRecord]:
        """Decode the full contents of a file written by this encoder."""
        return read_records(data, self.format, self.compression)


def iter_frames(data: bytes) -> Iterator[bytes]:
    """Yield the payloads of consecutive length-prefixed frames.

    Raises
    ------
    EncodingError
        If the data ends inside a frame.
    """
    offset = 0
    header = _FRAME_HEADER.size
    while offset < len(data):
        if offset + header > len(data):
            raise EncodingError(f"truncated frame header at offset {offset}")
        (length,) = _FRAME_HEADER.unpack_from(data, offset)
        offset += header
        if offset + length > len(data):
            raise EncodingError(f"truncated frame at offset {offset - header}")
        yield data[offset:offset + length]
        offset += length


def read_records(data: bytes, fmt: str, compression: str = "") -> list[TelemetryRecord]:
    """Decode every record in *data*, the contents of one output file."""
    if fmt == FORMAT_JSON and not compression:
        return decode(data, fmt)
    records: list[TelemetryRecord] = []
    for payload in iter_frames(data):
        records.extend(decode(decompress(payload, compression), fmt))
    return records
