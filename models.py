"""
models.py
─────────
Platform-neutral data models.

A live guild is captured into a Snapshot; the archive codec writes it to
disk and the restorer consumes it to recreate the structure on a target.
Nothing in here knows about Discord or about files.

Identifiers are opaque platform strings. Permission bitfields are plain
Python ints here; the archive codec is responsible for encoding them.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum


class ChannelType(Enum):
    TEXT = "text"
    VOICE = "voice"
    CATEGORY = "category"
    FORUM = "forum"
    ANNOUNCE = "announce"
    STAGE = "stage"


# Channel kinds whose history can be listed and replayed
TEXT_CAPABLE = frozenset({ChannelType.TEXT, ChannelType.ANNOUNCE})


class OverwriteType(Enum):
    ROLE = "role"
    USER = "user"


@dataclass
class Role:
    id: str
    name: str
    color: int = 0  # 0xRRGGBB, 0 = no colour
    hoist: bool = False
    position: int = 0  # lower = lower in hierarchy
    permissions: int = 0  # 64-bit permission bitfield
    mentionable: bool = False
    managed: bool = False  # owned by an integration, cannot be created by clients


@dataclass
class PermissionOverwrite:
    subject_id: str  # a Role.id or a user id, depending on subject_type
    subject_type: OverwriteType
    allow: int = 0
    deny: int = 0


@dataclass
class Channel:
    id: str
    name: str
    kind: ChannelType
    position: int = 0
    parent_id: str | None = None  # refers to a category Channel.id in the same snapshot
    overwrites: list[PermissionOverwrite] = field(default_factory=list)
    topic: str | None = None
    nsfw: bool = False

    @property
    def is_category(self) -> bool:
        return self.kind is ChannelType.CATEGORY

    @property
    def is_text_capable(self) -> bool:
        return self.kind in TEXT_CAPABLE


@dataclass
class Message:
    id: str
    channel_id: str
    author_id: str
    content: str
    created_at: int  # epoch milliseconds


@dataclass
class AuditEntry:
    id: str
    guild_id: str
    action_type: int
    executor_id: str | None = None
    target_id: str | None = None
    changes: list[dict] = field(default_factory=list)
    reason: str | None = None
    timestamp: int = 0  # epoch milliseconds


@dataclass
class Snapshot:
    """
    A point-in-time copy of one guild's structure.
    Built once by the capturer and treated as read-only afterwards.
    """

    source_guild_id: str
    captured_at: str  # ISO-8601, UTC

    roles: list[Role] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    messages: dict[str, list[Message]] = field(default_factory=dict)  # channel id → messages
    audit_entries: list[AuditEntry] = field(default_factory=list)

    # False when the capture never looked at history (not the same as "no messages")
    include_messages: bool = True
    include_audit_logs: bool = True

    @property
    def message_count(self) -> int:
        return sum(len(msgs) for msgs in self.messages.values())

    def counts(self) -> dict[str, int]:
        return {
            "roles": len(self.roles),
            "channels": len(self.channels),
            "messages": self.message_count,
            "audit_entries": len(self.audit_entries),
        }

    def summary(self) -> str:
        return (
            f"guild {self.source_guild_id} @ {self.captured_at} - "
            f"{len(self.roles)} roles, "
            f"{len(self.channels)} channels, "
            f"{self.message_count} messages, "
            f"{len(self.audit_entries)} audit entries"
        )
