import pytest
from unittest.mock import AsyncMock, MagicMock

import discord

GUILD_ID = 4242
VOICE_CHANNEL_ID = 500


def http_error(message="boom"):
    response = MagicMock()
    response.status = 500
    response.reason = "Internal Server Error"
    return discord.HTTPException(response, message)


class FakeGuild:
    """Just enough of discord.Guild for voice and permission handling."""

    def __init__(self, guild_id=GUILD_ID):
        self.id = guild_id
        self.voice_channels = []
        self.members = {}
        self.channels = {}

    def add_voice_channel(self, channel_id):
        channel = MagicMock()
        channel.id = channel_id
        channel.members = []
        self.voice_channels.append(channel)
        return channel

    def add_member(self, member_id, channel=None, mute=False, bot=False):
        member = MagicMock()
        member.id = member_id
        member.bot = bot
        member.mention = f"<@{member_id}>"
        member.voice = None
        self.members[member_id] = member

        async def edit(mute=None, reason=None):
            if member.voice is not None and mute is not None:
                member.voice.mute = mute

        member.edit = AsyncMock(side_effect=edit)
        if channel is not None:
            self.join_voice(member, channel, mute=mute)
        return member

    def join_voice(self, member, channel, mute=None):
        if member.voice is None:
            member.voice = MagicMock()
            member.voice.mute = bool(mute)
        elif mute is not None:
            member.voice.mute = mute
        member.voice.channel = channel
        channel.members.append(member)

    def leave_voice(self, member):
        member.voice.channel.members.remove(member)
        member.voice = None

    def get_member(self, member_id):
        return self.members.get(member_id)

    def get_channel(self, channel_id):
        return self.channels.get(channel_id)


@pytest.fixture
def guild():
    guild = FakeGuild()
    lobby = guild.add_voice_channel(VOICE_CHANNEL_ID)
    for member_id in (10, 11, 12):
        guild.add_member(member_id, lobby)
    guild.add_member(99, lobby, bot=True)
    return guild


@pytest.fixture
def client(guild):
    client = MagicMock()
    client.get_guild = MagicMock(side_effect=lambda gid: guild if gid == guild.id else None)
    return client


def muted_ids(guild):
    return {m.id for m in guild.members.values() if m.voice is not None and m.voice.mute}
