"""Bounded pool of open output files, keyed by destination path.

The pool is the only component that opens and closes files.  Entries are
kept in an :class:`~collections.OrderedDict` in recency order; when a new
path arrives at capacity the least-recently-used entry is evicted.

Locking::

    pool lock   guards the table, held only for lookup/insert/evict
    entry lock  serializes every write, flush, rotation and close of one file

Locks are always taken entry → pool, never pool → entry.  An evicted
entry is closed under its own lock, so an in-flight write always completes
first, and it is closed *before* the replacement file is opened, so the
number of open descriptors never exceeds ``max_open_files``.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from telemetry_file_exporter.errors import ResourceError

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_LOCK_TIMEOUT = 5.0


class EntryState(enum.Enum):
    """Lifecycle of one output file."""

    OPENING = "OPENING"
    ACTIVE = "ACTIVE"
    ROTATING = "ROTATING"
    CLOSED = "CLOSED"


class PoolEntry:
    """One open output stream, owned by :class:`HandlePool`.

    Callers only ever see an entry while holding its lock (between
    :meth:`HandlePool.acquire` and :meth:`HandlePool.release`).
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock = threading.Lock()
        self.closed = threading.Event()
        self.state = EntryState.OPENING
        self.size = 0
        self.opened_at = 0.0
        self.last_used = time.monotonic()
        self.retention_checked_at: Optional[float] = None
        self.dirty = False
        self._fh: Optional[BinaryIO] = None

    def __repr__(self) -> str:
        return f"PoolEntry({self.path!r}, state={self.state.value}, size={self.size})"

    def write(self, data: bytes) -> None:
        """Append *data*; caller holds :attr:`lock`."""
        if self._fh is None or self.state is EntryState.CLOSED:
            raise ResourceError(f"write to closed file {self.path}", path=self.path)
        self._fh.write(data)
        self.size += len(data)
        self.dirty = True

    def flush(self) -> None:
        """Push buffered bytes to the OS and ``fsync`` them."""
        if self._fh is None or self._fh.closed:
            return
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self.dirty = False

    def _open(self, truncate: bool) -> None:
        self._fh = open(self.path, "wb" if truncate else "ab")
        self.size = os.fstat(self._fh.fileno()).st_size
        self.opened_at = time.time()
        self.dirty = False

    def _close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.flush()
            os.fsync(fh.fileno())
        finally:
            fh.close()
            self.dirty = False


class HandlePool:
    """LRU cache of open files with a hard cap on simultaneously open entries.

    Parameters
    ----------
    max_open_files:
        Maximum number of entries (and open descriptors).
    auto_create_directories:
        Create missing parent directories on open instead of failing.
    flush_lock_timeout:
        How long :meth:`flush_all` waits for a busy entry before skipping it.
    """

    def __init__(
        self,
        max_open_files: int = 100,
        auto_create_directories: bool = True,
        flush_lock_timeout: float = DEFAULT_FLUSH_LOCK_TIMEOUT,
    ) -> None:
        if max_open_files < 1:
            raise ValueError("max_open_files must be at least 1")
        self._max_open_files = max_open_files
        self._auto_create = auto_create_directories
        self._flush_lock_timeout = flush_lock_timeout

        self._lock = threading.Lock()
        self._entries: OrderedDict[str, PoolEntry] = OrderedDict()
        self._closing: dict[str, PoolEntry] = {}
        self._is_closed = False
        self._open_count = 0
        self._peak_open = 0

    # ── introspection ───────────────────────────────────────────────

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def max_open_files(self) -> int:
        return self._max_open_files

    @property
    def open_count(self) -> int:
        """Number of files currently open (live entries plus closing ones)."""
        with self._lock:
            return self._open_count

    @property
    def peak_open_files(self) -> int:
        """High-water mark of :attr:`open_count` since creation."""
        with self._lock:
            return self._peak_open

    def paths(self) -> list[str]:
        """Cached paths, least recently used first."""
        with self._lock:
            return list(self._entries)

    # ── public API ──────────────────────────────────────────────────

    def acquire(self, path: str) -> PoolEntry:
        """Return the open entry for *path* with its lock held.

        Raises
        ------
        ResourceError
            If the pool is closed, the parent directory is missing and
            auto-creation is disabled, or the open itself fails.
        """
        while True:
            victims: list[PoolEntry] = []
            pending: Optional[PoolEntry] = None
            with self._lock:
                if self._is_closed:
                    raise ResourceError("handle pool is closed", path=path)
                entry = self._entries.get(path)
                if entry is not None:
                    self._entries.move_to_end(path)
                    created = False
                elif path in self._closing:
                    pending = self._closing[path]
                else:
                    while len(self._entries) >= self._max_open_files:
                        victims.append(self._pop_lru())
                    entry = PoolEntry(path)
                    entry.lock.acquire()
                    self._entries[path] = entry
                    created = True

            if pending is not None:
                # previous file for this path is still being evicted
                pending.closed.wait()
                continue

            if not created:
                entry.lock.acquire()
                if entry.state is EntryState.CLOSED:
                    entry.lock.release()
                    continue
                return entry

            for victim in victims:
                self._close_entry(victim, reason="evicted")
            try:
                self.open_file(entry)
            except BaseException:
                with self._lock:
                    if self._entries.get(path) is entry:
                        del self._entries[path]
                entry.state = EntryState.CLOSED
                entry.closed.set()
                entry.lock.release()
                raise
            return entry

    def release(self, entry: PoolEntry) -> None:
        """Return *entry* to the pool without closing it."""
        entry.last_used = time.monotonic()
        entry.lock.release()

    @contextmanager
    def lease(self, path: str) -> Iterator[PoolEntry]:
        """``with pool.lease(path) as entry:`` wrapper around acquire/release."""
        entry = self.acquire(path)
        try:
            yield entry
        finally:
            self.release(entry)

    def evict_one(self) -> Optional[str]:
        """Flush and close the least-recently-used entry.

        Returns the evicted path, or ``None`` if the pool is empty.
        """
        with self._lock:
            if not self._entries:
                return None
            victim = self._pop_lru()
        self._close_entry(victim, reason="evicted")
        return victim.path

    def invalidate(self, entry: PoolEntry) -> None:
        """Drop *entry* after a failed write; caller holds its lock.

        The next :meth:`acquire` for the same path opens a fresh file.
        """
        with self._lock:
            if self._entries.get(entry.path) is entry:
                del self._entries[entry.path]
        try:
            self.close_file(entry)
        except OSError as exc:
            logger.warning("Closing failed file %s: %s", entry.path, exc)
        finally:
            entry.state = EntryState.CLOSED
            entry.closed.set()

    def flush_all(self) -> int:
        """Flush every dirty entry; returns how many were flushed.

        Entries busy for longer than the flush lock timeout are skipped and
        picked up on the next call.  Flush failures are logged.
        """
        with self._lock:
            entries = list(self._entries.values())

        flushed = 0
        for entry in entries:
            if not entry.lock.acquire(timeout=self._flush_lock_timeout):
                logger.debug("Skipping flush of busy file %s", entry.path)
                continue
            try:
                if entry.state is EntryState.ACTIVE and entry.dirty:
                    entry.flush()
                    flushed += 1
            except OSError as exc:
                logger.error("Flush failed for %s: %s", entry.path, exc)
            finally:
                entry.lock.release()
        return flushed

    def close_all(self) -> None:
        """Drain in-flight writes, then flush and close every entry.

        The pool refuses new acquisitions afterwards.

        Raises
        ------
        ResourceError
            If any flush or close failed.  All other entries are still
            closed; bytes already written are not rolled back.
        """
        with self._lock:
            self._is_closed = True
            entries = list(self._entries.values())
            self._entries.clear()
            closing = list(self._closing.values())

        failures = []
        for entry in entries:
            if not self._close_entry(entry, reason="shutdown"):
                failures.append(entry.path)
        for entry in closing:
            entry.closed.wait()

        if failures:
            raise ResourceError(
                f"failed to close {len(failures)} file(s): {', '.join(failures)}"
            )

    # ── file operations (entry lock held) ──────────────────────────

    def open_file(self, entry: PoolEntry, truncate: bool = False) -> None:
        """Open *entry*'s path; append mode unless *truncate* is set."""
        parent = Path(entry.path).parent
        if not parent.is_dir():
            if not self._auto_create:
                raise ResourceError(
                    f"directory {parent} does not exist and auto-creation is disabled",
                    path=entry.path,
                )
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except (OSError, ValueError) as exc:
                raise ResourceError(f"cannot create {parent}: {exc}", path=entry.path) from exc

        try:
            entry._open(truncate)
        except (OSError, ValueError) as exc:
            raise ResourceError(f"cannot open {entry.path}: {exc}", path=entry.path) from exc

        with self._lock:
            self._open_count += 1
            self._peak_open = max(self._peak_open, self._open_count)
        entry.state = EntryState.ACTIVE
        logger.debug("Opened %s (%d bytes)", entry.path, entry.size)

    def close_file(self, entry: PoolEntry) -> None:
        """Flush, ``fsync`` and close *entry*'s file, keeping the entry."""
        if entry._fh is None:
            return
        try:
            entry._close()
        finally:
            with self._lock:
                self._open_count -= 1

    # ── internal ────────────────────────────────────────────────────

    def _pop_lru(self) -> PoolEntry:
        # pool lock held
        _, victim = self._entries.popitem(last=False)
        self._closing[victim.path] = victim
        return victim

    def _close_entry(self, entry: PoolEntry, reason: str) -> bool:
        """Close *entry* under its own lock; returns False on failure."""
        ok = True
        with entry.lock:
            try:
                if entry.state is not EntryState.CLOSED:
                    self.close_file(entry)
                    logger.debug("Closed %s (%s)", entry.path, reason)
            except OSError as exc:
                ok = False
                logger.error("Closing %s (%s) failed: %s", entry.path, reason, exc)
            finally:
                entry.state = EntryState.CLOSED
                with self._lock:
                    if self._closing.get(entry.path) is entry:
                        del self._closing[entry.path]
                entry.closed.set()
        return ok
