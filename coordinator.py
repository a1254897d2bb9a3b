"""
coordinator.py
──────────────
Runs a capture or a restore as one unit of work.

For each call the coordinator:
  • serializes against any other operation on the same guild
  • creates the staging / extraction directory and always removes it
  • publishes the archive only once it is completely written
  • emits exactly one summary event, or one error event, to the sink

The platform client and log sink are passed per call; the coordinator
itself only remembers where archives live and which guilds are busy.
"""

from __future__ import annotations
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import archive
from adapters.base import PlatformClient
from capturer import CaptureOptions, Capturer
from errors import OperationCancelled
from log_sink import LogSink
from restorer import RestoreOptions, RestoreReport, Restorer


@dataclass
class BackupResult:
    path: Path
    size_bytes: int
    captured_at: str
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class BackupInfo:
    name: str
    path: Path
    size_bytes: int
    created_at: datetime
    include_messages: bool


class Coordinator:
    def __init__(self, backup_dir: str | Path = "backups"):
        self.backup_dir = Path(backup_dir)
        # guild id -> [lock, callers holding or waiting for it]
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _lock(self, guild_id: str):
        """Serialize operations per guild; the entry is dropped once idle."""
        with self._locks_guard:
            entry = self._locks.setdefault(guild_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[guild_id]

    # ── capture ───────────────────────────────────────────────────────────

    def run_capture(
        self,
        platform: PlatformClient,
        sink: LogSink,
        guild_id: str,
        options: CaptureOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> BackupResult:
        cancel = cancel or threading.Event()
        with self._lock(guild_id):
            try:
                with tempfile.TemporaryDirectory(prefix="guild-backup-") as staging:
                    captured = Capturer(platform, sink, cancel).capture(guild_id, options)
                    if cancel.is_set():
                        raise OperationCancelled("capture cancelled")
                    path = archive.pack(captured.snapshot, Path(staging), self.backup_dir)
            except OperationCancelled:
                sink.emit("BackupCancelled", "warning", {"guild_id": guild_id})
                raise
            except Exception as e:
                sink.emit(
                    "BackupFailed",
                    "error",
                    {
                        "guild_id": guild_id,
                        "stage": getattr(e, "stage", "archive"),
                        "error": str(e),
                    },
                )
                raise

        snapshot = captured.snapshot
        result = BackupResult(
            path=path,
            size_bytes=path.stat().st_size,
            captured_at=snapshot.captured_at,
            counts=snapshot.counts(),
            warnings=captured.warnings,
        )
        sink.emit(
            "BackupComplete",
            "backup",
            {
                "guild_id": guild_id,
                "archive": result.name,
                "bytes": result.size_bytes,
                "counts": result.counts,
                "warnings": len(result.warnings),
            },
        )
        return result

    # ── restore ───────────────────────────────────────────────────────────

    def _archive_path(self, archive_path: str | Path) -> Path:
        path = Path(archive_path)
        if not path.exists() and (self.backup_dir / path.name).exists():
            return self.backup_dir / path.name
        return path

    def run_restore(
        self,
        platform: PlatformClient,
        sink: LogSink,
        archive_path: str | Path,
        target_guild_id: str,
        options: RestoreOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> RestoreReport:
        cancel = cancel or threading.Event()
        path = self._archive_path(archive_path)
        with self._lock(target_guild_id):
            try:
                with tempfile.TemporaryDirectory(prefix="guild-restore-") as extraction:
                    if cancel.is_set():
                        raise OperationCancelled("restore cancelled")
                    archive.unpack(path, Path(extraction))
                    report = Restorer(platform, sink, cancel).restore(
                        target_guild_id, Path(extraction), options
                    )
            except OperationCancelled:
                sink.emit(
                    "RestoreCancelled",
                    "warning",
                    {"guild_id": target_guild_id, "archive": path.name},
                )
                raise
            except Exception as e:
                sink.emit(
                    "RestoreFailed",
                    "error",
                    {"guild_id": target_guild_id, "archive": path.name, "error": str(e)},
                )
                raise

        sink.emit(
            "RestoreComplete",
            "restore",
            {
                "guild_id": target_guild_id,
                "archive": path.name,
                "source_guild_id": report.source_guild_id,
                **report.tallies(),
                "warnings": len(report.warnings),
                "errors": len(report.errors),
            },
        )
        return report

    # ── archive management ────────────────────────────────────────────────

    def list_backups(self) -> list[BackupInfo]:
        if not self.backup_dir.is_dir():
            return []
        backups = []
        for path in self.backup_dir.iterdir():
            parsed = archive.parse_archive_name(path.name)
            if parsed is None or not path.is_file():
                continue
            created_at, include_messages = parsed
            backups.append(
                BackupInfo(
                    name=path.name,
                    path=path,
                    size_bytes=path.stat().st_size,
                    created_at=created_at,
                    include_messages=include_messages,
                )
            )
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def resolve_backup(self, name: str) -> Path:
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValueError(f"invalid backup name: {name!r}")
        path = self.backup_dir / name
        if archive.parse_archive_name(name) is None or not path.is_file():
            raise FileNotFoundError(f"Backup file not found: {name}")
        return path

    def delete_backup(self, name: str, sink: LogSink | None = None) -> None:
        path = self.resolve_backup(name)
        path.unlink()
        if sink is not None:
            sink.emit("BackupDeleted", "backup", {"archive": name})
