"""
archive.py
──────────
Packs a Snapshot into a single compressed container and back.

Container layout (ZIP, DEFLATE level 9, flat):
    manifest.json       format version, file list, capture time, source guild
    roles.json          list of role records
    channels.json       list of channel records (overwrites inline)
    messages.json       [{"channel_id": …, "messages": [...]}]   (if captured)
    auditEntries.json   list of audit entry records               (if captured)

Permission bitfields are written as decimal strings so that readers whose
numbers are 53-bit floats cannot lose precision; they are turned back into
ints before anything leaves this module.

JSON is written with sorted keys and every entry carries a timestamp taken
from the snapshot, so packing the same snapshot twice gives byte-identical
entity payloads. Only the archive file name differs.
"""

from __future__ import annotations
import json
import os
import shutil
import tempfile
import zipfile
import zlib
from datetime import datetime, timezone
from pathlib import Path

from errors import CodecError
from models import (
    AuditEntry,
    Channel,
    ChannelType,
    Message,
    OverwriteType,
    PermissionOverwrite,
    Role,
    Snapshot,
)

FORMAT_NAME = "guild-snapshot"
FORMAT_VERSION = 1

MANIFEST_FILENAME = "manifest.json"
ROLES_FILENAME = "roles.json"
CHANNELS_FILENAME = "channels.json"
MESSAGES_FILENAME = "messages.json"
AUDIT_FILENAME = "auditEntries.json"
ENTITY_FILENAMES = (ROLES_FILENAME, CHANNELS_FILENAME, MESSAGES_FILENAME, AUDIT_FILENAME)

ARCHIVE_PREFIX = "backup-"
NO_MESSAGES_PREFIX = "backup-no-messages-"
ARCHIVE_SUFFIX = ".zip"
PARTIAL_SUFFIX = ".partial"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S_%f"

COMPRESS_LEVEL = 9
_MAX_MASK = (1 << 64) - 1
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


# ── bitmask encoding ──────────────────────────────────────────────────────────


def encode_mask(value: int) -> str:
    return str(value)


def decode_mask(value) -> int:
    if not isinstance(value, str) or not (value.isascii() and value.isdigit()):
        raise CodecError(f"bitmask must be a decimal string, got {value!r}")
    mask = int(value)
    if mask > _MAX_MASK:
        raise CodecError(f"bitmask {value} does not fit in 64 bits")
    return mask


# ── entity records ────────────────────────────────────────────────────────────


def encode_role(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "color": role.color,
        "hoist": role.hoist,
        "position": role.position,
        "permissions": encode_mask(role.permissions),
        "mentionable": role.mentionable,
        "managed": role.managed,
    }


def decode_role(record: dict) -> Role:
    return Role(
        id=str(record["id"]),
        name=record.get("name") or "",
        color=int(record.get("color") or 0),
        hoist=bool(record.get("hoist", False)),
        position=int(record.get("position", 0)),
        permissions=decode_mask(record.get("permissions", "0")),
        mentionable=bool(record.get("mentionable", False)),
        managed=bool(record.get("managed", False)),
    )


def encode_overwrite(overwrite: PermissionOverwrite) -> dict:
    return {
        "subject_id": overwrite.subject_id,
        "subject_type": overwrite.subject_type.value,
        "allow": encode_mask(overwrite.allow),
        "deny": encode_mask(overwrite.deny),
    }


def decode_overwrite(record: dict) -> PermissionOverwrite:
    return PermissionOverwrite(
        subject_id=str(record["subject_id"]),
        subject_type=OverwriteType(record.get("subject_type", "role")),
        allow=decode_mask(record.get("allow", "0")),
        deny=decode_mask(record.get("deny", "0")),
    )


def encode_channel(channel: Channel) -> dict:
    return {
        "id": channel.id,
        "name": channel.name,
        "kind": channel.kind.value,
        "position": channel.position,
        "parent_id": channel.parent_id,
        "overwrites": [encode_overwrite(o) for o in channel.overwrites],
        "topic": channel.topic,
        "nsfw": channel.nsfw,
    }


def decode_channel(record: dict) -> Channel:
    parent_id = record.get("parent_id")
    return Channel(
        id=str(record["id"]),
        name=record.get("name") or "",
        kind=ChannelType(record["kind"]),
        position=int(record.get("position", 0)),
        parent_id=str(parent_id) if parent_id else None,
        overwrites=[decode_overwrite(o) for o in record.get("overwrites", [])],
        topic=record.get("topic"),
        nsfw=bool(record.get("nsfw", False)),
    )


def encode_message(message: Message) -> dict:
    return {
        "id": message.id,
        "channel_id": message.channel_id,
        "author_id": message.author_id,
        "content": message.content,
        "created_at": message.created_at,
    }


def decode_message(record: dict, channel_id: str) -> Message:
    return Message(
        id=str(record["id"]),
        channel_id=str(record.get("channel_id") or channel_id),
        author_id=str(record.get("author_id") or ""),
        content=record.get("content") or "",
        created_at=int(record.get("created_at", 0)),
    )


def encode_audit_entry(entry: AuditEntry) -> dict:
    return {
        "id": entry.id,
        "guild_id": entry.guild_id,
        "action_type": entry.action_type,
        "executor_id": entry.executor_id,
        "target_id": entry.target_id,
        "changes": entry.changes,
        "reason": entry.reason,
        "timestamp": entry.timestamp,
    }


def decode_audit_entry(record: dict) -> AuditEntry:
    return AuditEntry(
        id=str(record["id"]),
        guild_id=str(record.get("guild_id") or ""),
        action_type=int(record.get("action_type", 0)),
        executor_id=record.get("executor_id"),
        target_id=record.get("target_id"),
        changes=list(record.get("changes") or []),
        reason=record.get("reason"),
        timestamp=int(record.get("timestamp", 0)),
    )


# ── naming ────────────────────────────────────────────────────────────────────


def archive_name(include_messages: bool, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    prefix = ARCHIVE_PREFIX if include_messages else NO_MESSAGES_PREFIX
    return f"{prefix}{now.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def parse_archive_name(name: str) -> tuple[datetime, bool] | None:
    """(pack time, includes messages) for an archive file name, else None."""
    if not name.endswith(ARCHIVE_SUFFIX):
        return None
    stem = name[: -len(ARCHIVE_SUFFIX)]
    if stem.startswith(NO_MESSAGES_PREFIX):
        stamp, include_messages = stem[len(NO_MESSAGES_PREFIX):], False
    elif stem.startswith(ARCHIVE_PREFIX):
        stamp, include_messages = stem[len(ARCHIVE_PREFIX):], True
    else:
        return None
    try:
        packed_at = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return packed_at, include_messages


# ── pack ──────────────────────────────────────────────────────────────────────


def _dump(payload) -> bytes:
    return (json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def build_manifest(snapshot: Snapshot, files: list[str]) -> dict:
    return {
        "format": FORMAT_NAME,
        "format_version": FORMAT_VERSION,
        "captured_at": snapshot.captured_at,
        "source_guild_id": snapshot.source_guild_id,
        "files": files,
        "counts": snapshot.counts(),
    }


def write_staging(snapshot: Snapshot, staging_dir: Path) -> list[str]:
    """Write one file per collection plus the manifest. Returns the entity files."""
    staging_dir.mkdir(parents=True, exist_ok=True)

    payloads = {
        ROLES_FILENAME: [encode_role(r) for r in snapshot.roles],
        CHANNELS_FILENAME: [encode_channel(c) for c in snapshot.channels],
    }
    if snapshot.include_messages:
        payloads[MESSAGES_FILENAME] = [
            {"channel_id": channel_id, "messages": [encode_message(m) for m in msgs]}
            for channel_id, msgs in snapshot.messages.items()
        ]
    if snapshot.include_audit_logs:
        payloads[AUDIT_FILENAME] = [encode_audit_entry(e) for e in snapshot.audit_entries]

    for filename, payload in payloads.items():
        (staging_dir / filename).write_bytes(_dump(payload))

    files = list(payloads)
    (staging_dir / MANIFEST_FILENAME).write_bytes(_dump(build_manifest(snapshot, files)))
    return files


def _zip_time(captured_at: str) -> tuple:
    try:
        dt = datetime.fromisoformat(captured_at)
    except (TypeError, ValueError):
        return _ZIP_EPOCH
    if dt.year < 1980:
        return _ZIP_EPOCH
    return (dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second)


def pack(snapshot: Snapshot, staging_dir: Path, dest_dir: Path) -> Path:
    """
    Stage the snapshot, compress it and publish it into dest_dir.
    The archive is written under a .partial name and renamed into place
    only once complete, so dest_dir never holds a half-written archive.
    """
    staging_dir, dest_dir = Path(staging_dir), Path(dest_dir)
    try:
        files = write_staging(snapshot, staging_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CodecError(f"could not stage snapshot: {e}") from e

    final = dest_dir / archive_name(snapshot.include_messages)
    while final.exists():
        final = dest_dir / archive_name(snapshot.include_messages)
    partial = final.with_name(final.name + PARTIAL_SUFFIX)

    date_time = _zip_time(snapshot.captured_at)
    published = False
    try:
        with zipfile.ZipFile(partial, "w") as zf:
            for filename in [MANIFEST_FILENAME, *files]:
                info = zipfile.ZipInfo(filename, date_time=date_time)
                info.external_attr = 0o644 << 16
                zf.writestr(
                    info,
                    (staging_dir / filename).read_bytes(),
                    compress_type=zipfile.ZIP_DEFLATED,
                    compresslevel=COMPRESS_LEVEL,
                )
        os.replace(partial, final)
        published = True
    except OSError as e:
        raise CodecError(f"could not write archive {final.name}: {e}") from e
    finally:
        if not published:
            partial.unlink(missing_ok=True)
    return final


# ── unpack ────────────────────────────────────────────────────────────────────


def _check_member(name: str):
    if not name or "/" in name or "\\" in name or name in (".", "..") or ":" in name:
        raise CodecError(f"archive contains an unsafe member name: {name!r}")


def unpack(archive_path: Path, dest_dir: Path | None = None) -> Path:
    """
    Extract an archive and validate its manifest. Returns the extraction
    directory; the caller removes it once done. If dest_dir is not given a
    fresh temporary directory is created, and removed again on failure.
    """
    created = dest_dir is None
    dest = Path(tempfile.mkdtemp(prefix="guild-restore-")) if created else Path(dest_dir)
    try:
        try:
            with zipfile.ZipFile(archive_path) as zf:
                names = zf.namelist()
                for name in names:
                    _check_member(name)
                if MANIFEST_FILENAME not in names:
                    raise CodecError(f"{Path(archive_path).name} has no {MANIFEST_FILENAME}")
                bad = zf.testzip()
                if bad is not None:
                    raise CodecError(f"{Path(archive_path).name} is corrupt (bad member {bad})")
                dest.mkdir(parents=True, exist_ok=True)
                zf.extractall(dest)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
            raise CodecError(f"cannot read archive {archive_path}: {e}") from e
        read_manifest(dest)
    except BaseException:
        if created:
            shutil.rmtree(dest, ignore_errors=True)
        raise
    return dest


def read_manifest(directory: Path) -> dict:
    path = Path(directory) / MANIFEST_FILENAME
    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise CodecError(f"no {MANIFEST_FILENAME} in {directory}") from e
    except (OSError, ValueError) as e:
        raise CodecError(f"{MANIFEST_FILENAME} is unreadable: {e}") from e
    if not isinstance(manifest, dict):
        raise CodecError(f"{MANIFEST_FILENAME} is not an object")

    version = manifest.get("format_version")
    if version != FORMAT_VERSION:
        raise CodecError(
            f"unsupported archive format version {version!r} "
            f"(this engine reads version {FORMAT_VERSION})"
        )

    files = manifest.get("files")
    if not isinstance(files, list) or not all(f in ENTITY_FILENAMES for f in files):
        raise CodecError(f"{MANIFEST_FILENAME} has an invalid file list: {files!r}")
    for filename in files:
        if not (Path(directory) / filename).is_file():
            raise CodecError(f"{filename} is listed in the manifest but missing")
    return manifest


def _load_list(directory: Path, filename: str) -> list:
    try:
        payload = json.loads((directory / filename).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise CodecError(f"{filename} is unreadable: {e}") from e
    if not isinstance(payload, list):
        raise CodecError(f"{filename} must hold a list of records")
    return payload


def load_snapshot(directory: Path) -> Snapshot:
    """Rebuild a Snapshot from an extraction directory."""
    directory = Path(directory)
    if not directory.is_dir():
        raise CodecError(f"extraction directory {directory} is not readable")
    manifest = read_manifest(directory)
    files = set(manifest["files"])

    roles, channels, audit_entries = [], [], []
    messages: dict[str, list[Message]] = {}
    current = ROLES_FILENAME
    try:
        if ROLES_FILENAME in files:
            roles = [decode_role(r) for r in _load_list(directory, ROLES_FILENAME)]
        current = CHANNELS_FILENAME
        if CHANNELS_FILENAME in files:
            channels = [decode_channel(c) for c in _load_list(directory, CHANNELS_FILENAME)]
        current = MESSAGES_FILENAME
        if MESSAGES_FILENAME in files:
            for group in _load_list(directory, MESSAGES_FILENAME):
                channel_id = str(group["channel_id"])
                messages[channel_id] = [
                    decode_message(m, channel_id) for m in group.get("messages", [])
                ]
        current = AUDIT_FILENAME
        if AUDIT_FILENAME in files:
            audit_entries = [decode_audit_entry(e) for e in _load_list(directory, AUDIT_FILENAME)]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CodecError(f"malformed record in {current}: {e!r}") from e

    return Snapshot(
        source_guild_id=str(manifest.get("source_guild_id") or ""),
        captured_at=str(manifest.get("captured_at") or ""),
        roles=roles,
        channels=channels,
        messages=messages,
        audit_entries=audit_entries,
        include_messages=MESSAGES_FILENAME in files,
        include_audit_logs=AUDIT_FILENAME in files,
    )
