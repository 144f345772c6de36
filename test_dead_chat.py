import pytest
from unittest.mock import AsyncMock, MagicMock

from DeadChat import ALLOW, DeadChat
from SessionErrors import TransportFailure
from conftest import GUILD_ID, http_error

DEAD_CHANNEL_ID = 600


@pytest.fixture
def dead_channel(guild):
    channel = MagicMock()
    channel.id = DEAD_CHANNEL_ID
    channel.set_permissions = AsyncMock()
    guild.channels[DEAD_CHANNEL_ID] = channel
    return channel


@pytest.mark.asyncio
async def test_grant_opens_channel_to_member(client, guild, dead_channel):
    dead_chat = DeadChat(client, DEAD_CHANNEL_ID)

    await dead_chat.grant(GUILD_ID, 11)

    dead_channel.set_permissions.assert_awaited_once_with(
        guild.get_member(11), overwrite=ALLOW, reason="Marked dead"
    )


@pytest.mark.asyncio
async def test_grant_failure_is_a_transport_failure(client, dead_channel):
    dead_channel.set_permissions.side_effect = http_error()
    dead_chat = DeadChat(client, DEAD_CHANNEL_ID)

    with pytest.raises(TransportFailure):
        await dead_chat.grant(GUILD_ID, 11)


@pytest.mark.asyncio
async def test_disabled_dead_chat_does_nothing(client, dead_channel):
    dead_chat = DeadChat(client, 0)

    assert not dead_chat.enabled
    await dead_chat.grant(GUILD_ID, 11)
    await dead_chat.revoke_all(GUILD_ID, {11})

    dead_channel.set_permissions.assert_not_awaited()


@pytest.mark.asyncio
async def test_revoke_all_keeps_going_past_failures(client, guild, dead_channel):
    calls = []

    async def set_permissions(target, overwrite=None, reason=None):
        calls.append(target.id)
        if target.id == 10:
            raise http_error()

    dead_channel.set_permissions.side_effect = set_permissions
    dead_chat = DeadChat(client, DEAD_CHANNEL_ID)

    await dead_chat.revoke_all(GUILD_ID, [10, 11, 12345])

    assert sorted(calls) == [10, 11, 12345]
