"""Tests for the handle pool (LRU eviction, locking, directory handling)."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from telemetry_file_exporter.errors import ResourceError
from telemetry_file_exporter.pool import EntryState, HandlePool


def _write(pool: HandlePool, path: Path, data: bytes) -> None:
    with pool.lease(str(path)) as entry:
        entry.write(data)


class TestAcquire:
    """Tests for :meth:`HandlePool.acquire` and :meth:`HandlePool.release`."""

    def test_opens_in_append_mode(self, tmp_path: Path) -> None:
        """Existing content survives a restart; size reflects it."""
        target = tmp_path / "out.log"
        target.write_bytes(b"previous\n")
        pool = HandlePool(max_open_files=2)

        entry = pool.acquire(str(target))
        try:
            assert entry.state is EntryState.ACTIVE
            assert entry.size == len(b"previous\n")
            entry.write(b"next\n")
        finally:
            pool.release(entry)
        pool.close_all()

        assert target.read_bytes() == b"previous\nnext\n"

    def test_same_path_returns_same_entry(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=2)
        first = pool.acquire(str(tmp_path / "a"))
        pool.release(first)
        second = pool.acquire(str(tmp_path / "a"))
        pool.release(second)
        assert first is second
        assert len(pool) == 1
        pool.close_all()

    def test_creates_missing_directories(self, tmp_path: Path) -> None:
        target = tmp_path / "x" / "y" / "out.log"
        pool = HandlePool(auto_create_directories=True)
        _write(pool, target, b"data")
        pool.close_all()
        assert target.read_bytes() == b"data"

    def test_missing_directory_without_auto_create(self, tmp_path: Path) -> None:
        pool = HandlePool(auto_create_directories=False)
        with pytest.raises(ResourceError, match="does not exist"):
            pool.acquire(str(tmp_path / "missing" / "out.log"))
        assert len(pool) == 0
        assert pool.open_count == 0

    def test_open_failure_is_resource_error(self, tmp_path: Path) -> None:
        """Permission problems and descriptor exhaustion surface as ResourceError."""
        pool = HandlePool()
        with patch("builtins.open", side_effect=OSError(24, "Too many open files")):
            with pytest.raises(ResourceError, match="Too many open files"):
                pool.acquire(str(tmp_path / "out.log"))
        assert len(pool) == 0

    @pytest.mark.parametrize("name", ["a\x00b", "bad-\ud800"])
    def test_unopenable_name_is_resource_error(self, tmp_path: Path, name: str) -> None:
        """NUL bytes and lone surrogates fail like any other open error."""
        pool = HandlePool(max_open_files=1)
        path = str(tmp_path / name)
        for _ in range(2):
            with pytest.raises(ResourceError, match="cannot open"):
                pool.acquire(path)
        assert len(pool) == 0

        _write(pool, tmp_path / "ok.log", b"x\n")
        pool.close_all()
        assert (tmp_path / "ok.log").read_bytes() == b"x\n"

    def test_unexpected_open_error_does_not_leak_entry(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=1)
        target = tmp_path / "out.log"
        with patch("builtins.open", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                pool.acquire(str(target))
        assert len(pool) == 0

        _write(pool, target, b"x\n")
        pool.close_all()
        assert target.read_bytes() == b"x\n"

    def test_closed_pool_refuses(self, tmp_path: Path) -> None:
        pool = HandlePool()
        pool.close_all()
        with pytest.raises(ResourceError, match="closed"):
            pool.acquire(str(tmp_path / "out.log"))


class TestEviction:
    """Tests for LRU eviction and the open-file cap."""

    def test_lru_entry_evicted(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=2)
        a, b, c = (str(tmp_path / n) for n in "abc")
        _write(pool, Path(a), b"1")
        _write(pool, Path(b), b"2")
        _write(pool, Path(a), b"3")  # a is now most recent
        _write(pool, Path(c), b"4")

        assert pool.paths() == [a, c]
        assert pool.open_count == 2
        # evicted entry was flushed before close
        assert Path(b).read_bytes() == b"2"
        pool.close_all()

    def test_evict_one(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=3)
        _write(pool, tmp_path / "a", b"a")
        _write(pool, tmp_path / "b", b"b")

        assert pool.evict_one() == str(tmp_path / "a")
        assert pool.paths() == [str(tmp_path / "b")]
        assert (tmp_path / "a").read_bytes() == b"a"
        pool.close_all()
        assert pool.evict_one() is None

    def test_cap_never_exceeded(self, tmp_path: Path) -> None:
        """Driving many more paths than the cap keeps open files bounded."""
        pool = HandlePool(max_open_files=4)
        for round_ in range(3):
            for i in range(20):
                _write(pool, tmp_path / f"f{i}", f"{round_}\n".encode())
        pool.close_all()

        assert pool.peak_open_files <= 4
        assert pool.open_count == 0
        for i in range(20):
            assert (tmp_path / f"f{i}").read_bytes() == b"0\n1\n2\n"

    def test_cap_under_concurrency(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=3)
        errors: list[BaseException] = []

        def worker(worker_id: int) -> None:
            try:
                for i in range(50):
                    _write(pool, tmp_path / f"f{(worker_id + i) % 10}", b"x\n")
            except BaseException as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        pool.close_all()

        assert errors == []
        assert pool.peak_open_files <= 3
        total = sum(len((tmp_path / f"f{i}").read_bytes()) for i in range(10))
        assert total == 6 * 50 * 2

    def test_eviction_waits_for_in_flight_write(self, tmp_path: Path) -> None:
        """A held entry is only closed after its holder releases it."""
        pool = HandlePool(max_open_files=1)
        held = pool.acquire(str(tmp_path / "a"))
        acquired = threading.Event()

        def other() -> None:
            with pool.lease(str(tmp_path / "b")) as entry:
                entry.write(b"b")
            acquired.set()

        t = threading.Thread(target=other)
        t.start()
        assert not acquired.wait(0.2)
        assert held.state is EntryState.ACTIVE
        held.write(b"a")
        pool.release(held)
        t.join(5)

        assert acquired.is_set()
        assert held.state is EntryState.CLOSED
        assert (tmp_path / "a").read_bytes() == b"a"
        pool.close_all()


class TestFlushAndClose:
    """Tests for :meth:`HandlePool.flush_all` and :meth:`HandlePool.close_all`."""

    def test_flush_all_flushes_dirty_only(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=4)
        _write(pool, tmp_path / "a", b"a")
        _write(pool, tmp_path / "b", b"b")

        assert pool.flush_all() == 2
        assert (tmp_path / "a").read_bytes() == b"a"
        assert pool.flush_all() == 0
        pool.close_all()

    def test_flush_all_skips_busy_entry(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=4, flush_lock_timeout=0.05)
        held = pool.acquire(str(tmp_path / "a"))
        held.write(b"a")
        assert pool.flush_all() == 0
        pool.release(held)
        assert pool.flush_all() == 1
        pool.close_all()

    def test_close_all_reports_failures(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=4)
        _write(pool, tmp_path / "a", b"a")
        _write(pool, tmp_path / "b", b"b")

        with patch("telemetry_file_exporter.pool.os.fsync", side_effect=OSError(28, "No space left")):
            with pytest.raises(ResourceError, match="failed to close 2"):
                pool.close_all()
        assert pool.open_count == 0

    def test_invalidate_drops_entry(self, tmp_path: Path) -> None:
        pool = HandlePool(max_open_files=4)
        entry = pool.acquire(str(tmp_path / "a"))
        entry.write(b"a")
        pool.invalidate(entry)
        pool.release(entry)

        assert entry.state is EntryState.CLOSED
        assert pool.paths() == []
        fresh = pool.acquire(str(tmp_path / "a"))
        assert fresh is not entry
        assert fresh.size == 1
        pool.release(fresh)
        pool.close_all()
