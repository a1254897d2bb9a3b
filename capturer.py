"""
capturer.py
───────────
Walks a live guild through a PlatformClient and builds a Snapshot.

Sequence:
  1. Roles              (fatal on failure, overwrites cannot be resolved without them)
  2. Channels           (fatal on failure, nothing to back up without them)
  3. Message history    (optional, per channel, bounded worker pool)
  4. Audit log entries  (optional)

Steps 3 and 4 degrade gracefully: a channel whose history cannot be read
becomes a warning on the result, not a failed capture.
"""

from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

from adapters.base import PlatformClient
from errors import CaptureError, OperationCancelled, PlatformError
from log_sink import LogSink
from models import Channel, Message, Snapshot


@dataclass
class CaptureOptions:
    include_messages: bool = True
    include_audit_logs: bool = True
    message_page_size: int = 100  # per channel, most recent first
    audit_page_size: int = 100
    workers: int = 4  # concurrent channel history fetches

    def __post_init__(self):
        for name in ("message_page_size", "audit_page_size", "workers"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer")


@dataclass
class CaptureResult:
    snapshot: Snapshot
    warnings: list[str] = field(default_factory=list)


class Capturer:
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
            raise OperationCancelled("capture cancelled")

    def _warn(self, warnings: list[str], message: str, **data):
        warnings.append(message)
        self.sink.emit("CaptureWarning", "warning", {"message": message, **data})

    def capture(self, guild_id: str, options: CaptureOptions | None = None) -> CaptureResult:
        options = options or CaptureOptions()
        warnings: list[str] = []
        captured_at = datetime.now(timezone.utc).isoformat()

        # ── roles ─────────────────────────────────────────────────────────
        self._check_cancel()
        try:
            roles = self.platform.list_roles(guild_id)
        except PlatformError as e:
            raise CaptureError("roles", str(e)) from e

        # ── channels ──────────────────────────────────────────────────────
        self._check_cancel()
        try:
            channels = self.platform.list_channels(guild_id)
        except PlatformError as e:
            raise CaptureError("channels", str(e)) from e

        # ── messages ──────────────────────────────────────────────────────
        messages: dict[str, list[Message]] = {}
        if options.include_messages:
            self._check_cancel()
            messages = self._capture_messages(channels, options, warnings)

        # ── audit log ─────────────────────────────────────────────────────
        audit_entries = []
        if options.include_audit_logs:
            self._check_cancel()
            try:
                audit_entries = self.platform.list_audit_entries(
                    guild_id, options.audit_page_size
                )
            except PlatformError as e:
                self._warn(
                    warnings,
                    f"audit log unavailable: {e}",
                    entity="audit_log",
                    guild_id=guild_id,
                )

        snapshot = Snapshot(
            source_guild_id=guild_id,
            captured_at=captured_at,
            roles=roles,
            channels=channels,
            messages=messages,
            audit_entries=audit_entries,
            include_messages=options.include_messages,
            include_audit_logs=options.include_audit_logs,
        )
        return CaptureResult(snapshot=snapshot, warnings=warnings)

    def _capture_messages(
        self,
        channels: list[Channel],
        options: CaptureOptions,
        warnings: list[str],
    ) -> dict[str, list[Message]]:
        text_channels = [ch for ch in channels if ch.is_text_capable]

        def fetch(channel: Channel):
            # Checked per channel so a cancel stops queued work promptly
            if self.cancel.is_set():
                return channel, None, None
            try:
                return channel, self.platform.list_messages(channel.id, options.message_page_size), None
            except PlatformError as e:
                return channel, None, e

        messages: dict[str, list[Message]] = {}
        with ThreadPoolExecutor(max_workers=options.workers) as pool:
            # map() yields in submission order, so the result is deterministic
            for channel, fetched, error in pool.map(fetch, text_channels):
                if error is not None:
                    self._warn(
                        warnings,
                        f"channel {channel.id} ({channel.name}) messages unavailable: {error}",
                        entity="messages",
                        channel_id=channel.id,
                    )
                elif fetched is not None:
                    messages[channel.id] = fetched

        self._check_cancel()
        return messages
