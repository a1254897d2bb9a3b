"""
adapters/base.py
────────────────
Abstract interface every platform client must implement.

The capturer reads a live guild through it and the restorer writes to one.
To support another transport or platform:
  1. Create adapters/myplatform.py
  2. Subclass PlatformClient
  3. Implement the seven abstract methods
  4. Hand an instance to the Coordinator
"""

from __future__ import annotations
from abc import ABC, abstractmethod

from models import AuditEntry, Channel, Message, Role


class PlatformClient(ABC):
    """
    A client knows how to read and create guild objects on one platform.
    It is stateless between calls; any call may raise PlatformError.
    Implementations must be safe to call from several threads at once,
    since message history is fetched by a worker pool.
    """

    # Human-readable name shown in the CLI
    platform_name: str = "Unknown Platform"

    # ── read ──────────────────────────────────────────────────────────────

    @abstractmethod
    def list_roles(self, guild_id: str) -> list[Role]:
        """Every role of the guild, including the default and managed roles."""

    @abstractmethod
    def list_channels(self, guild_id: str) -> list[Channel]:
        """Every channel of the guild with its permission overwrites inline."""

    @abstractmethod
    def list_messages(self, channel_id: str, page_size: int) -> list[Message]:
        """Up to page_size most recent messages of a channel, newest first."""

    @abstractmethod
    def list_audit_entries(self, guild_id: str, page_size: int) -> list[AuditEntry]:
        """Up to page_size most recent audit log entries, newest first."""

    # ── write ─────────────────────────────────────────────────────────────

    @abstractmethod
    def create_role(self, guild_id: str, role: Role) -> str:
        """
        Create a role from the given record (its id is ignored).
        Returns the platform-assigned role id.
        """

    @abstractmethod
    def create_channel(self, guild_id: str, channel: Channel) -> str:
        """
        Create a channel from the given record. parent_id and overwrite
        subjects must already refer to ids that exist on the target.
        Returns the platform-assigned channel id.
        """

    @abstractmethod
    def send_message(self, channel_id: str, content: str) -> str:
        """Post content to a channel. Returns the new message id."""
