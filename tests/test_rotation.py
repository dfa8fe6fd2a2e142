"""Tests for the rotation policy (naming, decisions, retention)."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from telemetry_file_exporter.config import RotationConfig
from telemetry_file_exporter.rotation import MEGABYTE, RotationPolicy

T0 = datetime(2026, 10, 17, 8, 30, 0, 123000, tzinfo=timezone.utc)


class TestDecisions:
    """Tests for :meth:`RotationPolicy.should_rotate`."""

    def test_from_config_none_disables(self) -> None:
        assert RotationPolicy.from_config(None) is None

    def test_from_config_converts_megabytes(self) -> None:
        policy = RotationPolicy.from_config(RotationConfig(max_megabytes=2, max_backups=3))
        assert policy.max_bytes == 2 * MEGABYTE
        assert policy.max_backups == 3

    def test_rotate_when_write_would_exceed(self) -> None:
        policy = RotationPolicy(max_bytes=100)
        assert policy.should_rotate(90, 11) is True
        assert policy.should_rotate(90, 10) is False

    def test_empty_file_never_rotates(self) -> None:
        """An oversized first write goes to the fresh file instead of an empty backup."""
        policy = RotationPolicy(max_bytes=100)
        assert policy.should_rotate(0, 1000) is False


class TestNaming:
    """Tests for backup naming and directory scanning."""

    def test_backup_name_format(self) -> None:
        policy = RotationPolicy(max_bytes=1)
        name = policy.backup_name("/out/app.log", T0)
        assert name == Path("/out/app-2026-10-17T08-30-00.123-0000.log")

    def test_backup_name_without_suffix(self) -> None:
        policy = RotationPolicy(max_bytes=1)
        name = policy.backup_name("/out/log", T0, sequence=7)
        assert name.name == "log-2026-10-17T08-30-00.123-0007"

    def test_backup_path_disambiguates_same_timestamp(self, tmp_path: Path) -> None:
        """Two rotations in the same millisecond get increasing sequence numbers."""
        policy = RotationPolicy(max_bytes=1)
        live = tmp_path / "app.log"
        first = policy.backup_path(live, T0)
        first.write_bytes(b"a")
        second = policy.backup_path(live, T0)

        assert first != second
        assert first.name.endswith("-0000.log")
        assert second.name.endswith("-0001.log")
        assert sorted([second.name, first.name]) == [first.name, second.name]

    def test_list_backups_sorted_and_filtered(self, tmp_path: Path) -> None:
        """Only this path's backups are listed, oldest first."""
        policy = RotationPolicy(max_bytes=1)
        live = tmp_path / "app.log"
        live.write_bytes(b"live")
        newer = policy.backup_name(live, T0 + timedelta(seconds=5))
        older = policy.backup_name(live, T0)
        same_ts = policy.backup_name(live, T0, sequence=1)
        for p in (newer, older, same_ts):
            p.write_bytes(b"x")
        # unrelated files sharing the prefix
        (tmp_path / "app-other.log").write_bytes(b"x")
        policy.backup_name(tmp_path / "app-other.log", T0).write_bytes(b"x")

        backups = policy.list_backups(live)

        assert [b.path for b in backups] == [older, same_ts, newer]
        assert backups[0].timestamp == T0

    def test_list_backups_missing_directory(self, tmp_path: Path) -> None:
        policy = RotationPolicy(max_bytes=1)
        assert policy.list_backups(tmp_path / "nope" / "app.log") == []

    def test_localtime_round_trip(self, tmp_path: Path) -> None:
        policy = RotationPolicy(max_bytes=1, localtime=True)
        live = tmp_path / "app.log"
        when = datetime(2026, 1, 2, 3, 4, 5, 6000).astimezone()
        policy.backup_name(live, when).write_bytes(b"x")

        [backup] = policy.list_backups(live)
        assert backup.timestamp == when


class TestRetention:
    """Tests for :meth:`RotationPolicy.expired_backups`."""

    def _make_backups(self, policy: RotationPolicy, live: Path, ages_days: list[int]) -> list[Path]:
        paths = []
        for age in ages_days:
            p = policy.backup_name(live, T0 - timedelta(days=age))
            p.write_bytes(b"x")
            paths.append(p)
        return paths

    def test_max_backups_deletes_oldest(self, tmp_path: Path) -> None:
        policy = RotationPolicy(max_bytes=1, max_backups=2)
        live = tmp_path / "app.log"
        oldest, middle, newest = self._make_backups(policy, live, [3, 2, 1])

        doomed = [b.path for b in policy.expired_backups(live, now=T0)]
        assert doomed == [oldest]

    def test_max_days_deletes_old(self, tmp_path: Path) -> None:
        policy = RotationPolicy(max_bytes=1, max_days=7)
        live = tmp_path / "app.log"
        old, recent = self._make_backups(policy, live, [10, 1])

        doomed = [b.path for b in policy.expired_backups(live, now=T0)]
        assert doomed == [old]

    def test_unlimited_keeps_everything(self, tmp_path: Path) -> None:
        policy = RotationPolicy(max_bytes=1)
        live = tmp_path / "app.log"
        self._make_backups(policy, live, [400, 300, 200, 100])
        assert policy.expired_backups(live, now=T0) == []
        assert policy.has_retention is False
