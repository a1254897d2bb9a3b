"""
restorer.py
───────────
The restore engine.

Takes an extraction directory (see archive.unpack) and any PlatformClient,
then rebuilds the guild on the target in a fixed phase order:
  1. Roles
  2. Channels     (categories first, then children by parent and position)
  3. Messages     (optional, oldest first)

Later phases refer to earlier objects by their *old* ids; the id remap
table built along the way translates them. Audit entries are archival
only and are never replayed.

Nothing about an individual record stops the run: it is skipped or
counted as failed, reported to the sink, and the next record is tried.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

from adapters.base import PlatformClient
from archive import load_snapshot
from errors import OperationCancelled, PlatformError
from log_sink import LogSink
from models import Channel, OverwriteType, PermissionOverwrite, Snapshot

# ── ANSI colours ──────────────────────────────────────────────────────────────
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"


def _head(msg):
    print(f"\n{BOLD}{msg}{RESET}")


@dataclass
class RestoreOptions:
    restore_messages: bool = False


# ── Restore report ────────────────────────────────────────────────────────────


@dataclass
class EntityTally:
    created: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"created": self.created, "skipped": self.skipped, "failed": self.failed}


@dataclass
class RestoreReport:
    target_guild_id: str
    source_guild_id: str = ""

    roles: EntityTally = field(default_factory=EntityTally)
    channels: EntityTally = field(default_factory=EntityTally)
    overwrites: EntityTally = field(default_factory=EntityTally)
    messages: EntityTally = field(default_factory=EntityTally)
    audit_entries_archived: int = 0

    # old id → new id
    role_map: dict[str, str] = field(default_factory=dict)
    channel_map: dict[str, str] = field(default_factory=dict)

    # one record per replayed message: who wrote it and when, originally
    provenance: list[dict] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def id_map(self) -> dict[str, str]:
        return {**self.role_map, **self.channel_map}

    @property
    def failed(self) -> int:
        return self.roles.failed + self.channels.failed + self.messages.failed

    def tallies(self) -> dict[str, dict[str, int]]:
        return {
            "roles": self.roles.as_dict(),
            "channels": self.channels.as_dict(),
            "overwrites": self.overwrites.as_dict(),
            "messages": self.messages.as_dict(),
        }

    def print(self):
        _head("═══════════════════ Restore Report ═══════════════════")

        print(f"\n  Source guild : {self.source_guild_id}")
        print(f"  Target guild : {BOLD}{self.target_guild_id}{RESET}\n")

        sections = [
            ("Roles", self.roles),
            ("Channels", self.channels),
            ("Overwrites", self.overwrites),
            ("Messages", self.messages),
        ]
        for label, tally in sections:
            print(
                f"  {label:<12}"
                f"  {GREEN}{tally.created} created{RESET}"
                + (f"   {YELLOW}{tally.skipped} skipped{RESET}" if tally.skipped else "")
                + (f"   {RED}{tally.failed} failed{RESET}" if tally.failed else "")
            )
        if self.audit_entries_archived:
            print(f"  {'Audit log':<12}  {DIM}{self.audit_entries_archived} entries kept in archive only{RESET}")

        for msg in self.warnings:
            print(f"             {DIM}↳ {msg}{RESET}")
        for msg in self.errors:
            print(f"             {RED}↳ {msg}{RESET}")

        if self.id_map:
            print(f"\n  {CYAN}Id remap table:{RESET}")
            for old_id, new_id in self.id_map.items():
                print(f"   {old_id} → {new_id}")
        print()


def restore_order(channels: list[Channel]) -> list[Channel]:
    """Categories first, then each parent's children in ascending position."""
    return sorted(
        channels,
        key=lambda c: (not c.is_category, c.parent_id or "", c.position, len(c.id), c.id),
    )


# ── Restorer ──────────────────────────────────────────────────────────────────


class Restorer:
    def __init__(
        self,
        platform: PlatformClient,
        sink: LogSink,
        cancel: threading.Event | None = None,
    ):
        self.platform = platform
        self.sink = sink
        self.cancel = cancel or threading.Event()

    def _check_cancel(self):
        if self.cancel.is_set():
            raise OperationCancelled("restore cancelled")

    def _skip(self, report: RestoreReport, tally: EntityTally, entity: str, old_id: str, reason: str, count: int = 1):
        tally.skipped += count
        message = f"{entity} {old_id}: {reason}"
        report.warnings.append(message)
        self.sink.emit("RestoreWarning", "warning", {"entity": entity, "old_id": old_id, "reason": reason})

    def _fail(self, report: RestoreReport, tally: EntityTally, entity: str, old_id: str, error: Exception):
        tally.failed += 1
        message = f"{entity} {old_id}: {error}"
        report.errors.append(message)
        self.sink.emit("RestoreError", "error", {"entity": entity, "old_id": old_id, "reason": str(error)})

    def restore(
        self,
        target_guild_id: str,
        extraction_dir: Path,
        options: RestoreOptions | None = None,
    ) -> RestoreReport:
        snapshot = load_snapshot(extraction_dir)
        return self.restore_snapshot(target_guild_id, snapshot, options)

    def restore_snapshot(
        self,
        target_guild_id: str,
        snapshot: Snapshot,
        options: RestoreOptions | None = None,
    ) -> RestoreReport:
        options = options or RestoreOptions()
        report = RestoreReport(
            target_guild_id=target_guild_id,
            source_guild_id=snapshot.source_guild_id,
            audit_entries_archived=len(snapshot.audit_entries),
        )

        self._check_cancel()
        self._restore_roles(snapshot, report)

        self._check_cancel()
        self._restore_channels(snapshot, report)

        if options.restore_messages:
            self._check_cancel()
            self._restore_messages(snapshot, report)

        return report

    # ── 1. roles ──────────────────────────────────────────────────────────

    def _restore_roles(self, snapshot: Snapshot, report: RestoreReport):
        for role in sorted(snapshot.roles, key=lambda r: (r.position, len(r.id), r.id)):
            if role.id == snapshot.source_guild_id:
                # @everyone exists on every guild under the guild's own id
                report.role_map[role.id] = report.target_guild_id
                self._skip(report, report.roles, "role", role.id, "default role mapped onto target's default role")
                continue
            if not role.name.strip():
                self._skip(report, report.roles, "role", role.id, "empty name")
                continue
            if role.managed:
                self._skip(report, report.roles, "role", role.id, f"'{role.name}' is managed by an integration")
                continue
            try:
                new_id = self.platform.create_role(report.target_guild_id, role)
            except PlatformError as e:
                self._fail(report, report.roles, "role", role.id, e)
                continue
            report.role_map[role.id] = new_id
            report.roles.created += 1

    # ── 2. channels ───────────────────────────────────────────────────────

    def _resolve_overwrites(self, channel: Channel, report: RestoreReport) -> list[PermissionOverwrite]:
        resolved = []
        for ow in channel.overwrites:
            if ow.subject_type is OverwriteType.USER:
                # user ids are global, not guild-scoped
                resolved.append(ow)
                continue
            new_subject = report.role_map.get(ow.subject_id)
            if new_subject is None:
                self._skip(
                    report, report.overwrites, "overwrite", f"{channel.id}/{ow.subject_id}",
                    "role not restored; overwrite dropped",
                )
                continue
            resolved.append(replace(ow, subject_id=new_subject))
        return resolved

    def _restore_channels(self, snapshot: Snapshot, report: RestoreReport):
        for channel in restore_order(snapshot.channels):
            self._check_cancel()
            if not channel.name.strip():
                self._skip(report, report.channels, "channel", channel.id, "empty name")
                continue

            parent_id = None
            if channel.parent_id:
                parent_id = report.channel_map.get(channel.parent_id)
                if parent_id is None:
                    message = f"parent {channel.parent_id} not restored; created without a parent"
                    report.warnings.append(f"channel {channel.id}: {message}")
                    self.sink.emit(
                        "RestoreWarning", "warning",
                        {"entity": "channel", "old_id": channel.id, "reason": message},
                    )

            overwrites = self._resolve_overwrites(channel, report)
            request = replace(channel, parent_id=parent_id, overwrites=overwrites)
            try:
                new_id = self.platform.create_channel(report.target_guild_id, request)
            except PlatformError as e:
                self._fail(report, report.channels, "channel", channel.id, e)
                continue
            report.channel_map[channel.id] = new_id
            report.channels.created += 1
            report.overwrites.created += len(overwrites)

    # ── 3. messages ───────────────────────────────────────────────────────

    def _restore_messages(self, snapshot: Snapshot, report: RestoreReport):
        for channel_id, messages in snapshot.messages.items():
            self._check_cancel()
            new_channel = report.channel_map.get(channel_id)
            if new_channel is None:
                if messages:
                    self._skip(
                        report, report.messages, "messages", channel_id,
                        "channel not restored", count=len(messages),
                    )
                continue

            for message in sorted(messages, key=lambda m: (m.created_at, len(m.id), m.id)):
                if not message.content.strip():
                    self._skip(report, report.messages, "message", message.id, "no text content")
                    continue
                try:
                    new_id = self.platform.send_message(new_channel, message.content)
                except PlatformError as e:
                    self._fail(report, report.messages, "message", message.id, e)
                    continue
                report.messages.created += 1
                report.provenance.append({
                    "channel_id": new_channel,
                    "message_id": new_id,
                    "original_message_id": message.id,
                    "original_author_id": message.author_id,
                    "original_created_at": message.created_at,
                })
