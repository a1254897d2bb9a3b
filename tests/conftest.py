import tempfile

import pytest

from coordinator import Coordinator
from models import (
    AuditEntry,
    Channel,
    ChannelType,
    Message,
    OverwriteType,
    PermissionOverwrite,
    Role,
)
from tests.fakes import InMemoryPlatform, RecordingSink

VIEW_CHANNEL = 1 << 10
SEND_MESSAGES = 1 << 11
ADMINISTRATOR = 1 << 3

SOURCE_GUILD = "900"
TARGET_GUILD = "901"


def example_roles():
    return [
        Role(id="100", name="Admin", color=0xFF0000, hoist=True, position=2, permissions=ADMINISTRATOR),
        Role(id="101", name="Member", color=0x00FF00, position=1, permissions=VIEW_CHANNEL | SEND_MESSAGES, mentionable=True),
    ]


def example_channels():
    return [
        Channel(id="200", name="General", kind=ChannelType.CATEGORY, position=0),
        Channel(
            id="201",
            name="general-chat",
            kind=ChannelType.TEXT,
            position=0,
            parent_id="200",
            overwrites=[
                PermissionOverwrite(
                    subject_id="101",
                    subject_type=OverwriteType.ROLE,
                    allow=VIEW_CHANNEL | SEND_MESSAGES,
                )
            ],
            topic="Say hi",
        ),
    ]


def example_messages():
    return {
        "201": [
            Message(id="300", channel_id="201", author_id="42", content="first", created_at=1_700_000_000_000),
            Message(id="301", channel_id="201", author_id="43", content="second", created_at=1_700_000_001_000),
            Message(id="302", channel_id="201", author_id="42", content="third", created_at=1_700_000_002_000),
        ]
    }


def example_audit():
    return [
        AuditEntry(id="400", guild_id=SOURCE_GUILD, action_type=22, executor_id="42", target_id="77",
                   reason="spam", timestamp=1_700_000_000_000),
        AuditEntry(id="401", guild_id=SOURCE_GUILD, action_type=30, executor_id="42",
                   changes=[{"key": "name", "new_value": "Member"}], timestamp=1_700_000_005_000),
    ]


@pytest.fixture
def source():
    platform = InMemoryPlatform()
    platform.add_guild(
        SOURCE_GUILD,
        roles=example_roles(),
        channels=example_channels(),
        messages=example_messages(),
        audit=example_audit(),
    )
    return platform


@pytest.fixture
def target():
    platform = InMemoryPlatform()
    platform.add_guild(TARGET_GUILD)
    return platform


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def scratch(tmp_path, monkeypatch):
    """Redirect temporary directories so tests can see what is left behind."""
    path = tmp_path / "tmp"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path


@pytest.fixture
def coordinator(tmp_path):
    return Coordinator(tmp_path / "backups")
