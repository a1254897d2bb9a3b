import threading
import time
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

import archive
from capturer import CaptureOptions
from errors import CaptureError, CodecError, OperationCancelled, PlatformError
from models import Channel, ChannelType, Message
from restorer import RestoreOptions
from tests.conftest import SOURCE_GUILD, TARGET_GUILD
from tests.fakes import InMemoryPlatform


def _archives(coordinator):
    if not coordinator.backup_dir.exists():
        return []
    return sorted(p.name for p in coordinator.backup_dir.iterdir())


# ── capture ───────────────────────────────────────────────────────────────────


def test_capture_publishes_one_archive_and_one_summary(coordinator, source, sink):
    result = coordinator.run_capture(source, sink, SOURCE_GUILD)

    assert result.path.parent == coordinator.backup_dir
    assert result.path.is_file()
    assert result.size_bytes == result.path.stat().st_size
    assert result.counts == {"roles": 2, "channels": 2, "messages": 3, "audit_entries": 2}
    assert _archives(coordinator) == [result.name]

    assert sink.names().count("BackupComplete") == 1
    summary = sink.of("BackupComplete")[0]
    assert summary["archive"] == result.name
    assert summary["guild_id"] == SOURCE_GUILD


def test_capture_without_messages_is_named_accordingly(coordinator, source, sink):
    result = coordinator.run_capture(source, sink, SOURCE_GUILD, CaptureOptions(include_messages=False))

    assert result.name.startswith("backup-no-messages-")
    with zipfile.ZipFile(result.path) as zf:
        assert "messages.json" not in zf.namelist()


def test_round_trip_rebuilds_an_equivalent_guild(coordinator, source, target, sink):
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)
    report = coordinator.run_restore(
        target, sink, backup.path, TARGET_GUILD, RestoreOptions(restore_messages=True)
    )

    def shape(platform, guild_id):
        roles = {r.id: r.name for r in platform.roles[guild_id]}
        channels = {c.id: c for c in platform.channels[guild_id]}
        return (
            sorted((r.name, r.position, r.color, r.permissions, r.hoist) for r in platform.roles[guild_id]),
            sorted(
                (
                    c.name,
                    c.kind,
                    c.position,
                    channels[c.parent_id].name if c.parent_id else None,
                    tuple(sorted((roles.get(o.subject_id, o.subject_id), o.allow, o.deny) for o in c.overwrites)),
                )
                for c in channels.values()
            ),
        )

    assert shape(target, TARGET_GUILD) == shape(source, SOURCE_GUILD)
    assert [content for _, content in target.sent] == ["first", "second", "third"]
    assert report.failed == 0
    assert sink.names().count("RestoreComplete") == 1


def test_fatal_capture_failure_publishes_nothing(coordinator, source, sink, scratch):
    source.broken.add("list_channels")

    with pytest.raises(CaptureError):
        coordinator.run_capture(source, sink, SOURCE_GUILD)

    assert _archives(coordinator) == []
    assert list(scratch.iterdir()) == []
    failed = sink.of("BackupFailed")
    assert len(failed) == 1
    assert failed[0]["stage"] == "channels"
    assert "BackupComplete" not in sink.names()


class FailsOnThirdChannel(InMemoryPlatform):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def list_messages(self, channel_id, page_size):
        if channel_id == "3":
            raise self.error
        return super().list_messages(channel_id, page_size)


def _five_channels(platform):
    channels = [Channel(id=str(i), name=f"c{i}", kind=ChannelType.TEXT, position=i) for i in range(1, 6)]
    messages = {c.id: [Message(id=f"m{c.id}", channel_id=c.id, author_id="1", content="hi", created_at=1)] for c in channels}
    platform.add_guild(SOURCE_GUILD, channels=channels, messages=messages)


def test_unreadable_channel_still_publishes_with_a_warning(coordinator, sink, scratch):
    platform = FailsOnThirdChannel(PlatformError("Missing Access", status=403))
    _five_channels(platform)

    result = coordinator.run_capture(platform, sink, SOURCE_GUILD)

    assert result.counts["messages"] == 4
    assert len(result.warnings) == 1
    assert sink.of("BackupComplete")[0]["warnings"] == 1
    assert list(scratch.iterdir()) == []


def test_unexpected_error_mid_capture_removes_staging(coordinator, sink, scratch):
    platform = FailsOnThirdChannel(RuntimeError("boom"))
    _five_channels(platform)

    with pytest.raises(RuntimeError):
        coordinator.run_capture(platform, sink, SOURCE_GUILD)

    assert list(scratch.iterdir()) == []
    assert _archives(coordinator) == []
    assert sink.of("BackupFailed")[0]["error"] == "boom"


def test_cancelled_capture_publishes_nothing(coordinator, source, sink, scratch):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(OperationCancelled):
        coordinator.run_capture(source, sink, SOURCE_GUILD, cancel=cancel)

    assert _archives(coordinator) == []
    assert list(scratch.iterdir()) == []
    assert sink.names() == ["BackupCancelled"]


# ── restore ───────────────────────────────────────────────────────────────────


def test_restore_accepts_an_archive_name(coordinator, source, target, sink):
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)

    report = coordinator.run_restore(target, sink, backup.name, TARGET_GUILD)

    assert report.channels.created == 2
    assert sink.of("RestoreComplete")[0]["archive"] == backup.name


def test_corrupt_archive_is_fatal_and_touches_nothing(coordinator, target, sink, scratch):
    coordinator.backup_dir.mkdir(parents=True)
    path = coordinator.backup_dir / "backup-2026-01-01_00-00-00_000000.zip"
    path.write_bytes(b"PK\x03\x04 not really")

    with pytest.raises(CodecError):
        coordinator.run_restore(target, sink, path, TARGET_GUILD)

    assert target.calls["create_role"] == 0
    assert list(scratch.iterdir()) == []
    assert sink.of("RestoreFailed")[0]["archive"] == path.name


def test_partial_restore_still_reports_completion(coordinator, source, target, sink):
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)
    target.broken.add("create_role")

    report = coordinator.run_restore(target, sink, backup.path, TARGET_GUILD)

    assert report.roles.failed == 2
    assert report.channels.created == 2
    summary = sink.of("RestoreComplete")[0]
    assert summary["roles"] == {"created": 0, "skipped": 0, "failed": 2}
    assert summary["errors"] == 2


class BreaksOnThirdChannel(InMemoryPlatform):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def create_channel(self, guild_id, channel):
        if self.calls["create_channel"] == 2:
            self.calls["create_channel"] += 1
            raise self.error
        return super().create_channel(guild_id, channel)


@pytest.mark.parametrize("error", [PlatformError("Missing Permissions", status=403), RuntimeError("boom")])
def test_failure_on_third_channel_still_removes_extraction(coordinator, sink, scratch, error):
    source = InMemoryPlatform()
    _five_channels(source)
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)
    target = BreaksOnThirdChannel(error)
    target.add_guild(TARGET_GUILD)

    if isinstance(error, PlatformError):
        report = coordinator.run_restore(target, sink, backup.path, TARGET_GUILD)
        assert report.channels.as_dict() == {"created": 4, "skipped": 0, "failed": 1}
    else:
        with pytest.raises(RuntimeError):
            coordinator.run_restore(target, sink, backup.path, TARGET_GUILD)
        assert sink.of("RestoreFailed")[0]["error"] == "boom"

    assert list(scratch.iterdir()) == []


def test_cancelled_restore_removes_extraction(coordinator, source, target, sink, scratch):
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(OperationCancelled):
        coordinator.run_restore(target, sink, backup.path, TARGET_GUILD, cancel=cancel)

    assert list(scratch.iterdir()) == []
    assert "RestoreCancelled" in sink.names()


# ── concurrency ───────────────────────────────────────────────────────────────


class SlowRoles(InMemoryPlatform):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0
        self.gauge = threading.Lock()

    def list_roles(self, guild_id):
        with self.gauge:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self.gauge:
            self.active -= 1
        return super().list_roles(guild_id)


def test_operations_on_the_same_guild_are_serialized(coordinator, sink):
    platform = SlowRoles()
    platform.add_guild(SOURCE_GUILD)
    results = []

    def run():
        results.append(coordinator.run_capture(platform, sink, SOURCE_GUILD))

    threads = [threading.Thread(target=run) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert platform.peak == 1
    assert len(results) == 3
    assert len({r.name for r in results}) == 3
    assert coordinator._locks == {}


def test_guild_locks_are_released_after_each_operation(coordinator, source, sink):
    source.broken.add("list_channels")

    with pytest.raises(CaptureError):
        coordinator.run_capture(source, sink, SOURCE_GUILD)
    source.broken.clear()
    coordinator.run_capture(source, sink, SOURCE_GUILD)

    assert coordinator._locks == {}


# ── archive management ────────────────────────────────────────────────────────


def test_list_backups_newest_first(coordinator):
    coordinator.backup_dir.mkdir(parents=True)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    older = archive.archive_name(True, base)
    newer = archive.archive_name(False, base + timedelta(hours=1))
    for name in (older, newer, newer + ".partial", "notes.txt"):
        (coordinator.backup_dir / name).write_bytes(b"x")

    backups = coordinator.list_backups()

    assert [b.name for b in backups] == [newer, older]
    assert backups[0].include_messages is False
    assert backups[0].created_at == base + timedelta(hours=1)
    assert backups[1].size_bytes == 1


def test_list_backups_without_directory(coordinator):
    assert coordinator.list_backups() == []


def test_resolve_and_delete(coordinator, source, sink):
    backup = coordinator.run_capture(source, sink, SOURCE_GUILD)

    assert coordinator.resolve_backup(backup.name) == backup.path

    coordinator.delete_backup(backup.name, sink)

    assert not backup.path.exists()
    assert sink.of("BackupDeleted") == [{"archive": backup.name}]


@pytest.mark.parametrize("name", ["../backup-2026-01-01_00-00-00_000000.zip", "sub/x.zip", "..", ""])
def test_resolve_rejects_paths(coordinator, name):
    with pytest.raises(ValueError):
        coordinator.resolve_backup(name)


def test_delete_missing_backup(coordinator):
    with pytest.raises(FileNotFoundError):
        coordinator.delete_backup("backup-2026-01-01_00-00-00_000000.zip")
