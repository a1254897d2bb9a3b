"""
errors.py
─────────
Exception types shared by the capture, archive and restore components.

Anything derived from BackupError that escapes a Coordinator call means
the operation did not complete. Per-entity problems never surface as
exceptions; they are counted in the operation's report instead.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base class for every error raised by this package."""


class PlatformError(BackupError):
    """A Platform Client call failed."""

    def __init__(self, message: str, status: int | None = None, transient: bool = False):
        super().__init__(message)
        self.status = status
        self.transient = transient


class CaptureError(BackupError):
    """Capture could not enumerate something it cannot do without."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"capture failed at stage '{stage}': {message}")
        self.stage = stage
        self.reason = message


class CodecError(BackupError):
    """An archive could not be written, read or understood."""

    def __init__(self, message: str, fatal: bool = True):
        super().__init__(message)
        self.fatal = fatal


class OperationCancelled(BackupError):
    """The caller's cancellation signal was observed."""
