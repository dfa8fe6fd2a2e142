"""Rotating file sink: applies the rotation policy around every write.

Per destination path the file moves through::

    ACTIVE → ROTATING → ACTIVE        (within one write call)
    ACTIVE → CLOSED                   (eviction or shutdown, done by the pool)

Rotation is ``flush`` → ``fsync`` → close → ``os.rename`` to the backup
name → reopen the original path truncated.  Retention then deletes the
oldest backups beyond ``max_backups`` and those older than ``max_days``.
Rename and delete failures are logged; the write itself still goes ahead.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from telemetry_file_exporter.errors import RotationError
from telemetry_file_exporter.pool import EntryState, HandlePool, PoolEntry
from telemetry_file_exporter.rotation import RotationPolicy

logger = logging.getLogger(__name__)

RETENTION_CHECK_SECONDS = 60.0


class RotatingFileSink:
    """Write through pool entries, rotating them per *policy*.

    Parameters
    ----------
    pool:
        The handle pool that owns the entries.
    policy:
        Rotation policy, or ``None`` to let files grow unbounded.
    """

    def __init__(self, pool: HandlePool, policy: Optional[RotationPolicy] = None) -> None:
        self._pool = pool
        self._policy = policy

    @property
    def policy(self) -> Optional[RotationPolicy]:
        return self._policy

    def write(self, entry: PoolEntry, data: bytes) -> None:
        """Append *data* to *entry*, rotating first if the policy says so.

        The caller holds the entry lock.

        Raises
        ------
        ResourceError
            If the file cannot be reopened after rotation.
        OSError
            If the write itself fails (e.g. disk full).
        """
        policy = self._policy
        if policy is not None:
            if policy.should_rotate(entry.size, len(data)):
                try:
                    self._rotate(entry, policy)
                except RotationError as exc:
                    logger.error("Rotation of %s failed: %s", entry.path, exc)
            elif policy.max_days > 0 and self._retention_due(entry):
                self._enforce_retention(entry, policy)

        entry.write(data)

    # ── internal ────────────────────────────────────────────────────

    def _rotate(self, entry: PoolEntry, policy: RotationPolicy) -> None:
        entry.state = EntryState.ROTATING
        size = entry.size
        self._pool.close_file(entry)

        backup = policy.backup_path(entry.path)
        try:
            os.rename(entry.path, backup)
        except OSError as exc:
            # keep appending to the un-rotated file
            self._pool.open_file(entry)
            raise RotationError(f"cannot rename {entry.path} to {backup.name}: {exc}") from exc

        self._pool.open_file(entry, truncate=True)
        logger.info("Rotated %s → %s (%d bytes)", entry.path, backup.name, size)

        if policy.has_retention:
            self._enforce_retention(entry, policy)

    def _retention_due(self, entry: PoolEntry) -> bool:
        if entry.retention_checked_at is None:
            return True
        return time.monotonic() - entry.retention_checked_at >= RETENTION_CHECK_SECONDS

    def _enforce_retention(self, entry: PoolEntry, policy: RotationPolicy) -> None:
        entry.retention_checked_at = time.monotonic()
        for backup in policy.expired_backups(entry.path):
            try:
                backup.path.unlink()
                logger.info("Removed backup %s", backup.path.name)
            except FileNotFoundError:
                continue  # already gone
            except OSError as exc:
                logger.error("Cannot remove backup %s: %s", backup.path, exc)
