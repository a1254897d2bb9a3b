"""
log_sink.py
───────────
Where capture/restore components report what happened.

Every component receives a LogSink instead of printing or reaching for a
global logger. ConsoleLogSink is what the CLI uses; tests hand in their
own recording sink.
"""

from __future__ import annotations
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

# ── ANSI ──────────────────────────────────────────────────────────────────────
RED = "\033[91m"
YELLOW = "\033[93m"
DIM = "\033[2m"
RESET = "\033[0m"

_CATEGORY_COLOURS = {
    "error": RED,
    "warning": YELLOW,
}


class LogSink(ABC):
    @abstractmethod
    def emit(self, event_name: str, category: str, data: dict | None = None) -> None:
        """Record one structured event."""


class ConsoleLogSink(LogSink):
    """
    Prints one line per event and, if log_file is set, appends the same
    line (without colour) to that file. Safe to call from worker threads.
    """

    def __init__(self, log_file: str | Path | None = None, quiet: bool = False):
        self.log_file = Path(log_file) if log_file else None
        self.quiet = quiet
        self._lock = threading.Lock()

    @staticmethod
    def format(event_name: str, category: str, data: dict | None) -> str:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        payload = json.dumps(data if data is not None else {}, default=str, sort_keys=True)
        return f"[{stamp}] Event: {event_name} ({category}) {payload}"

    def emit(self, event_name: str, category: str, data: dict | None = None) -> None:
        line = self.format(event_name, category, data)
        with self._lock:
            if not self.quiet:
                colour = _CATEGORY_COLOURS.get(category, DIM)
                print(f"  {colour}{line}{RESET}")
            if self.log_file:
                self.log_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
