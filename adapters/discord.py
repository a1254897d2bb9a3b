"""
adapters/discord.py
───────────────────
Platform client for Discord, over the REST API.

API base: https://discord.com/api/v10
Auth:     Authorization: Bot <token>

The bot needs, at minimum:
  • View Channels, Read Message History     ← capture
  • View Audit Log                          ← capture with audit logs
  • Manage Roles, Manage Channels           ← restore
  • Send Messages                           ← restore with message replay
"""

from __future__ import annotations
import time
from datetime import datetime

import requests

from models import (
    AuditEntry,
    Channel,
    ChannelType,
    Message,
    OverwriteType,
    PermissionOverwrite,
    Role,
)
from adapters.base import PlatformClient
from errors import PlatformError
from log_sink import LogSink

DISCORD_API = "https://discord.com/api/v10"
DISCORD_EPOCH_MS = 1420070400000

# Discord refuses page sizes above this on history endpoints
MAX_PAGE = 100

# Discord channel type constants
_D_TEXT = 0
_D_VOICE = 2
_D_CATEGORY = 4
_D_ANNOUNCE = 5
_D_STAGE = 13
_D_FORUM = 15

_CHANNEL_TYPES = {
    _D_TEXT: ChannelType.TEXT,
    _D_VOICE: ChannelType.VOICE,
    _D_CATEGORY: ChannelType.CATEGORY,
    _D_ANNOUNCE: ChannelType.ANNOUNCE,
    _D_STAGE: ChannelType.STAGE,
    _D_FORUM: ChannelType.FORUM,
}
_DISCORD_TYPES = {ctype: dtype for dtype, ctype in _CHANNEL_TYPES.items()}

# Discord overwrite type constants
_OVERWRITE_TYPES = {0: OverwriteType.ROLE, 1: OverwriteType.USER}
_DISCORD_OVERWRITE_TYPES = {otype: dtype for dtype, otype in _OVERWRITE_TYPES.items()}


def snowflake_to_ts_ms(snowflake: int | str) -> int:
    return (int(snowflake) >> 22) + DISCORD_EPOCH_MS


def iso_to_ts_ms(value: str) -> int:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return round(datetime.fromisoformat(value).timestamp() * 1000)


def _to_overwrite(raw: dict) -> PermissionOverwrite:
    return PermissionOverwrite(
        subject_id=raw["id"],
        subject_type=_OVERWRITE_TYPES.get(raw.get("type", 0), OverwriteType.ROLE),
        allow=int(raw.get("allow", 0)),
        deny=int(raw.get("deny", 0)),
    )


class DiscordClient(PlatformClient):
    platform_name = "Discord"

    def __init__(
        self,
        bot_token: str,
        retries: int = 6,
        timeout: float = 10,
        sink: LogSink | None = None,
    ):
        self.token = bot_token
        self.retries = retries
        self.timeout = timeout
        self.sink = sink

    # ── internal HTTP helper ──────────────────────────────────────────────

    def _headers(self) -> dict:
        return {"Authorization": f"Bot {self.token}"}

    @staticmethod
    def _json(r, method: str, endpoint: str):
        try:
            return r.json()
        except ValueError as e:
            raise PlatformError(
                f"Discord {method} {endpoint} returned a non-JSON body "
                f"({r.status_code}): {r.text[:200]}",
                status=r.status_code,
                transient=True,
            ) from e

    @staticmethod
    def _retry_after(r) -> float:
        # Cloudflare answers some 429s with an HTML page instead of JSON
        try:
            return float(r.json().get("retry_after", 1.0))
        except (ValueError, TypeError, AttributeError):
            return 1.0

    def _rate_limited(self, endpoint: str, wait: float):
        if self.sink is not None:
            self.sink.emit("RateLimited", "warning", {"endpoint": endpoint, "retry_after": wait})
        else:
            print(f"    ⏳ Discord rate-limit – waiting {wait:.1f}s …")

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: dict | None = None,
        params: dict | None = None,
    ):
        """Call the Discord API with rate-limit retry."""
        url = f"{DISCORD_API}{endpoint}"
        for _ in range(self.retries):
            try:
                r = requests.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=payload,
                    params=params,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise PlatformError(
                    f"Discord {method} {endpoint} failed: {e}", transient=True
                ) from e
            if r.status_code == 429:
                wait = self._retry_after(r)
                self._rate_limited(endpoint, wait)
                time.sleep(wait + 0.1)
                continue
            if r.status_code == 401:
                raise PlatformError("Invalid Discord bot token", status=401)
            if not r.ok:
                raise PlatformError(
                    f"Discord {r.status_code} on {endpoint}: {r.text[:200]}",
                    status=r.status_code,
                    transient=r.status_code >= 500,
                )
            if r.status_code == 204:
                return None
            return self._json(r, method, endpoint)
        raise PlatformError(f"Too many retries for {endpoint}", status=429, transient=True)

    def _paginate(self, endpoint: str, page_size: int, key: str | None = None) -> list[dict]:
        """Walk a newest-first history endpoint backwards until page_size items."""
        items: list[dict] = []
        before = None
        while len(items) < page_size:
            params = {"limit": min(MAX_PAGE, page_size - len(items))}
            if before:
                params["before"] = before
            page = self._request("GET", endpoint, params=params) or []
            if key is not None:
                page = page.get(key, []) if isinstance(page, dict) else []
            if not page:
                break
            items.extend(page)
            before = page[-1]["id"]
            if len(page) < params["limit"]:
                break
        return items[:page_size]

    # ── read ──────────────────────────────────────────────────────────────

    def list_roles(self, guild_id: str) -> list[Role]:
        raw_roles = self._request("GET", f"/guilds/{guild_id}/roles") or []
        return [
            Role(
                id=r["id"],
                name=r["name"],
                color=r.get("color") or 0,
                hoist=r.get("hoist", False),
                position=r.get("position", 0),
                permissions=int(r.get("permissions", 0)),
                mentionable=r.get("mentionable", False),
                managed=r.get("managed", False),
            )
            for r in raw_roles
        ]

    def list_channels(self, guild_id: str) -> list[Channel]:
        raw_channels = self._request("GET", f"/guilds/{guild_id}/channels") or []

        channels: list[Channel] = []
        for ch in raw_channels:
            ctype = _CHANNEL_TYPES.get(ch["type"])
            if ctype is None:
                continue  # thread, DM, etc. – not part of the guild structure

            channels.append(
                Channel(
                    id=ch["id"],
                    name=ch.get("name") or "",
                    kind=ctype,
                    position=ch.get("position", 0),
                    parent_id=ch.get("parent_id"),
                    overwrites=[_to_overwrite(o) for o in ch.get("permission_overwrites", [])],
                    topic=ch.get("topic") or None,
                    nsfw=ch.get("nsfw", False),
                )
            )
        return channels

    def list_messages(self, channel_id: str, page_size: int) -> list[Message]:
        raw = self._paginate(f"/channels/{channel_id}/messages", page_size)
        return [
            Message(
                id=m["id"],
                channel_id=channel_id,
                author_id=(m.get("author") or {}).get("id", ""),
                content=m.get("content") or "",
                created_at=iso_to_ts_ms(m["timestamp"]) if m.get("timestamp") else snowflake_to_ts_ms(m["id"]),
            )
            for m in raw
        ]

    def list_audit_entries(self, guild_id: str, page_size: int) -> list[AuditEntry]:
        raw = self._paginate(
            f"/guilds/{guild_id}/audit-logs", page_size, key="audit_log_entries"
        )
        return [
            AuditEntry(
                id=e["id"],
                guild_id=guild_id,
                action_type=e.get("action_type", 0),
                executor_id=e.get("user_id"),
                target_id=e.get("target_id"),
                changes=e.get("changes") or [],
                reason=e.get("reason"),
                timestamp=snowflake_to_ts_ms(e["id"]),
            )
            for e in raw
        ]

    # ── write ─────────────────────────────────────────────────────────────

    def create_role(self, guild_id: str, role: Role) -> str:
        result = self._request(
            "POST",
            f"/guilds/{guild_id}/roles",
            {
                "name": role.name,
                "color": role.color,
                "hoist": role.hoist,
                "permissions": str(role.permissions),
                "mentionable": role.mentionable,
            },
        )
        return self._new_id(result, "role")

    def create_channel(self, guild_id: str, channel: Channel) -> str:
        payload: dict = {
            "name": channel.name,
            "type": _DISCORD_TYPES.get(channel.kind, _D_TEXT),
            "position": channel.position,
            "permission_overwrites": [
                {
                    "id": o.subject_id,
                    "type": _DISCORD_OVERWRITE_TYPES[o.subject_type],
                    "allow": str(o.allow),
                    "deny": str(o.deny),
                }
                for o in channel.overwrites
            ],
        }
        if channel.parent_id:
            payload["parent_id"] = channel.parent_id
        if channel.topic:
            payload["topic"] = channel.topic
        if channel.nsfw:
            payload["nsfw"] = True

        result = self._request("POST", f"/guilds/{guild_id}/channels", payload)
        return self._new_id(result, "channel")

    def send_message(self, channel_id: str, content: str) -> str:
        result = self._request(
            "POST", f"/channels/{channel_id}/messages", {"content": content}
        )
        return self._new_id(result, "message")

    @staticmethod
    def _new_id(result, what: str) -> str:
        new_id = (result or {}).get("id")
        if not new_id:
            raise PlatformError(f"No {what} ID in response: {result}")
        return new_id
