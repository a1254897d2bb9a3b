"""
main.py
───────
CLI entry point for the guild backup tool.

    guild-backup backup [--no-messages]
    guild-backup list
    guild-backup restore <file> [--guild ID] [--messages]
    guild-backup delete <file>

Run without arguments for an interactive menu. Settings come from
config.json in the working directory; anything missing is prompted for.
"""

from __future__ import annotations
import argparse
import getpass
import json
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from adapters.discord import DiscordClient
from capturer import CaptureOptions
from coordinator import Coordinator
from errors import BackupError, OperationCancelled
from log_sink import ConsoleLogSink
from restorer import RestoreOptions

# ── ANSI ──────────────────────────────────────────────────────────────────────
BOLD = "\033[1m"
CYAN = "\033[96m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"

ACTIONS = {
    "1": ("backup", "Create backup"),
    "2": ("list", "List backups"),
    "3": ("restore", "Restore from file"),
    "4": ("delete", "Delete backup"),
}


def banner():
    print(f"""
{BOLD}╔══════════════════════════════════════════════════╗
║   Guild Backup & Restore  v1.0                   ║
║   Snapshot · Archive · Rebuild                   ║
╚══════════════════════════════════════════════════╝{RESET}

{YELLOW}What is captured:{RESET}
  ✔ Roles (colour, permissions, hoist, mentionable)
  ✔ Categories & channels (with permission overwrites)
  ✔ Recent message history  (optional)
  ✔ Recent audit log        (optional, archive only)

{YELLOW}What restore cannot bring back:{RESET}
  ✘ Original message authors & timestamps (kept as provenance)
  ✘ Integration-managed roles
""")


def prompt(label: str, secret: bool = False) -> str:
    while True:
        val = (
            getpass.getpass(f"  {label}: ") if secret else input(f"  {label}: ")
        ).strip()
        if val:
            return val
        print("  (required)")


def load_config(path: str = "config.json") -> dict:
    if os.path.exists(path):
        with open(path) as f:
            return json.load(f)
    return {}


def capture_options(cfg: dict, include_messages: bool | None = None) -> CaptureOptions:
    return CaptureOptions(
        include_messages=cfg.get("include_messages", True) if include_messages is None else include_messages,
        include_audit_logs=cfg.get("include_audit_logs", True),
        message_page_size=int(cfg.get("message_page_size", 100)),
        audit_page_size=int(cfg.get("audit_page_size", 100)),
        workers=int(cfg.get("workers", 4)),
    )


def restore_options(cfg: dict, restore_messages: bool | None = None) -> RestoreOptions:
    return RestoreOptions(
        restore_messages=cfg.get("restore_messages", False) if restore_messages is None else restore_messages,
    )


def _sz(b: int) -> str:
    for unit in ("B", "KB", "MB"):
        if b < 1024:
            return f"{b:.0f} {unit}" if unit == "B" else f"{b:.1f} {unit}"
        b /= 1024
    return f"{b:.1f} GB"


def run_cancellable(fn, *args, **kwargs):
    """Run fn on a worker thread so Ctrl-C becomes a cancellation signal."""
    cancel = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(fn, *args, cancel=cancel, **kwargs)
        while True:
            try:
                return future.result(timeout=0.2)
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                print(f"\n  {YELLOW}Cancelling, cleaning up …{RESET}")
                cancel.set()
                return future.result()


# ── commands ──────────────────────────────────────────────────────────────────


def _discord(config: dict, guild_id: str | None = None, sink=None) -> tuple[DiscordClient, str]:
    discord_cfg = config.get("discord", {})
    token = discord_cfg.get("token", "")
    guild_id = guild_id or discord_cfg.get("guild_id", "")
    if not token or not guild_id:
        print(f"\n{BOLD}Discord credentials:{RESET}")
        print("  The bot needs Manage Roles, Manage Channels, View Audit Log")
        print("  and Read Message History in the server.\n")
    if not token:
        token = prompt("Discord Bot Token", secret=True)
    if not guild_id:
        guild_id = prompt("Discord Server (Guild) ID")
    return DiscordClient(bot_token=token, sink=sink), guild_id


def cmd_backup(coordinator: Coordinator, sink, config: dict, include_messages: bool | None = None):
    client, guild_id = _discord(config, sink=sink)
    options = capture_options(config.get("backup", {}), include_messages)

    print(f"\n📥  Backing up guild {BOLD}{guild_id}{RESET} …\n")
    result = run_cancellable(coordinator.run_capture, client, sink, guild_id, options)

    print(f"\n  {GREEN}✔{RESET}  Backup complete: {result.path} ({_sz(result.size_bytes)})")
    counts = result.counts
    print(f"     Roles: {counts['roles']}   Channels: {counts['channels']}   "
          f"Messages: {counts['messages']}   Audit entries: {counts['audit_entries']}")
    for warning in result.warnings:
        print(f"     {YELLOW}⚠{RESET}  {warning}")


def cmd_list(coordinator: Coordinator):
    backups = coordinator.list_backups()
    if not backups:
        print("\n  No backups found.")
        return
    print(f"\n{BOLD}Available backups:{RESET}")
    for b in backups:
        note = "" if b.include_messages else f"  {DIM}(no messages){RESET}"
        print(f"  - {b.name}  {DIM}{_sz(b.size_bytes)}  {b.created_at:%Y-%m-%d %H:%M:%S} UTC{RESET}{note}")


def cmd_restore(
    coordinator: Coordinator,
    sink,
    config: dict,
    archive_path: str,
    guild_id: str | None = None,
    restore_messages: bool | None = None,
):
    client, guild_id = _discord(config, guild_id, sink)
    options = restore_options(config.get("backup", {}), restore_messages)

    print(f"\n🚀  Restoring {BOLD}{archive_path}{RESET} into guild {guild_id} …")
    report = run_cancellable(
        coordinator.run_restore, client, sink, archive_path, guild_id, options
    )
    report.print()


def cmd_delete(coordinator: Coordinator, sink, name: str):
    coordinator.delete_backup(name, sink)
    print(f"\n  {GREEN}✔{RESET}  Deleted {name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="guild-backup", description="Back up and restore a guild's structure.")
    parser.add_argument("--config", default="config.json", help="path to config.json")
    sub = parser.add_subparsers(dest="command")

    p_backup = sub.add_parser("backup", help="create a backup")
    p_backup.add_argument("--no-messages", action="store_true", help="skip message history")

    sub.add_parser("list", help="list backups")

    p_restore = sub.add_parser("restore", help="restore from an archive")
    p_restore.add_argument("file", help="archive path or name in the backup directory")
    p_restore.add_argument("--guild", help="target guild id (defaults to config)")
    p_restore.add_argument("--messages", action="store_true", default=None, help="replay message history")

    p_delete = sub.add_parser("delete", help="delete a backup")
    p_delete.add_argument("file", help="archive name in the backup directory")
    return parser


def pick_action() -> str:
    print(f"{BOLD}What would you like to do?{RESET}\n")
    for key, (_, label) in ACTIONS.items():
        print(f"  [{key}]  {label}")
    print()

    while True:
        choice = input("  Enter number: ").strip()
        if choice in ACTIONS:
            return ACTIONS[choice][0]
        print("  Please enter a valid number.")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    backup_cfg = config.get("backup", {})

    coordinator = Coordinator(backup_cfg.get("directory", "backups"))
    sink = ConsoleLogSink(log_file=backup_cfg.get("log_file", os.path.join("logs", "general.log")))

    command = args.command
    if command is None:
        banner()
        command = pick_action()
        if command == "restore":
            cmd_list(coordinator)
            args.file = prompt("Archive file")
            args.guild, args.messages = None, None
        elif command == "delete":
            cmd_list(coordinator)
            args.file = prompt("Archive name")
        elif command == "backup":
            args.no_messages = False

    try:
        if command == "backup":
            cmd_backup(coordinator, sink, config, False if args.no_messages else None)
        elif command == "list":
            cmd_list(coordinator)
        elif command == "restore":
            cmd_restore(coordinator, sink, config, args.file, args.guild, args.messages)
        elif command == "delete":
            cmd_delete(coordinator, sink, args.file)
    except OperationCancelled:
        print("\n  Operation cancelled.")
        return 0
    except (BackupError, FileNotFoundError, ValueError) as e:
        print(f"\n  {RED}✘{RESET}  {e}")
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\n  Cancelled.")
        sys.exit(0)
