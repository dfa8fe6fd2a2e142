"""Rotation policy: when to roll a file and what to call the backup.

Backup names embed the rotation time and a sequence number::

    /out/app.log  →  /out/app-2026-10-17T08-30-00.123-0000.log

The timestamp sorts chronologically, and the sequence number keeps two
rotations within the same millisecond apart.  Because everything needed for
retention is encoded in the name, the backup list is re-derived from the
directory on demand instead of being kept in memory.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from telemetry_file_exporter.config import RotationConfig

MEGABYTE = 1024 * 1024

_TIME_FORMAT = "%Y-%m-%dT%H-%M-%S"
_TIME_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.\d{3}"


@dataclass(frozen=True)
class Backup:
    """One archived file of a destination path."""

    path: Path
    timestamp: datetime
    sequence: int

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.sequence)


class RotationPolicy:
    """Pure rotation decisions for one exporter configuration.

    Parameters
    ----------
    max_bytes:
        Rotate before a write would push the live file past this size.
    max_days:
        Delete backups older than this many days (``0`` keeps them).
    max_backups:
        Keep at most this many backups (``0`` keeps all).
    localtime:
        Use local time instead of UTC in backup names.  Names carry no UTC
        offset, so backups made during a DST fall-back hour can sort out of
        order, and ``max_backups`` retention may then delete a newer one
        first.  Use UTC where that matters.
    """

    def __init__(
        self,
        max_bytes: int,
        max_days: int = 0,
        max_backups: int = 0,
        localtime: bool = False,
    ) -> None:
        self.max_bytes = max_bytes
        self.max_days = max_days
        self.max_backups = max_backups
        self.localtime = localtime

    @classmethod
    def from_config(cls, config: Optional[RotationConfig]) -> Optional["RotationPolicy"]:
        """Return ``None`` when rotation is disabled."""
        if config is None:
            return None
        return cls(
            max_bytes=config.max_megabytes * MEGABYTE,
            max_days=config.max_days,
            max_backups=config.max_backups,
            localtime=config.localtime,
        )

    # ── decisions ───────────────────────────────────────────────────

    def should_rotate(self, size: int, incoming: int) -> bool:
        """True when appending *incoming* bytes to a file of *size* bytes
        would exceed the limit.  An empty file is never rotated."""
        return size > 0 and size + incoming > self.max_bytes

    @property
    def has_retention(self) -> bool:
        return self.max_backups > 0 or self.max_days > 0

    def now(self) -> datetime:
        if self.localtime:
            return datetime.now().astimezone()
        return datetime.now(timezone.utc)

    # ── naming ──────────────────────────────────────────────────────

    def backup_name(self, path: str | Path, when: datetime, sequence: int = 0) -> Path:
        """Return the backup path of *path* for a rotation at *when*."""
        p = Path(path)
        stamp = self._to_zone(when).strftime(_TIME_FORMAT)
        millis = when.microsecond // 1000
        return p.with_name(f"{p.stem}-{stamp}.{millis:03d}-{sequence:04d}{p.suffix}")

    def backup_path(self, path: str | Path, when: Optional[datetime] = None) -> Path:
        """Return the backup name for a rotation at *when*.

        The sequence number is one past the highest already used for the
        same timestamp, so it stays monotonic even after retention deleted
        earlier backups.
        """
        when = when or self.now()
        first = self.backup_name(path, when)
        prefix = first.name[: -len(f"0000{Path(path).suffix}")]
        taken = [b.sequence for b in self.list_backups(path) if b.path.name.startswith(prefix)]
        sequence = max(taken) + 1 if taken else 0
        return self.backup_name(path, when, sequence)

    def list_backups(self, path: str | Path) -> list[Backup]:
        """Scan the directory of *path* for its backups, oldest first."""
        p = Path(path)
        pattern = re.compile(
            rf"^{re.escape(p.stem)}-({_TIME_PATTERN})-(\d{{4,}}){re.escape(p.suffix)}$"
        )
        try:
            names = os.listdir(p.parent)
        except FileNotFoundError:
            return []

        backups = []
        for name in names:
            match = pattern.match(name)
            if match is None:
                continue
            backups.append(
                Backup(
                    path=p.parent / name,
                    timestamp=self._parse_stamp(match.group(1)),
                    sequence=int(match.group(2)),
                )
            )
        backups.sort(key=lambda b: b.sort_key)
        return backups

    def expired_backups(self, path: str | Path, now: Optional[datetime] = None) -> list[Backup]:
        """Backups of *path* that retention says must be deleted.

        The oldest backups beyond ``max_backups`` go first, then anything
        older than ``max_days``.
        """
        backups = self.list_backups(path)
        doomed: list[Backup] = []
        if self.max_backups > 0 and len(backups) > self.max_backups:
            excess = len(backups) - self.max_backups
            doomed.extend(backups[:excess])
            backups = backups[excess:]
        if self.max_days > 0:
            cutoff = (now or self.now()) - timedelta(days=self.max_days)
            doomed.extend(b for b in backups if b.timestamp < cutoff)
        return doomed

    # ── helpers ─────────────────────────────────────────────────────

    def _to_zone(self, when: datetime) -> datetime:
        if when.tzinfo is None:
            return when
        if self.localtime:
            return when.astimezone()
        return when.astimezone(timezone.utc)

    def _parse_stamp(self, text: str) -> datetime:
        stamp, millis = text.rsplit(".", 1)
        parsed = datetime.strptime(stamp, _TIME_FORMAT).replace(microsecond=int(millis) * 1000)
        if self.localtime:
            return parsed.astimezone()
        return parsed.replace(tzinfo=timezone.utc)
