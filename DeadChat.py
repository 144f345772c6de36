import asyncio
import logging
from typing import Iterable

import discord

from SessionErrors import TransportFailure

logger = logging.getLogger(__name__)

ALLOW = discord.PermissionOverwrite(view_channel=True, send_messages=True, read_message_history=True)


class DeadChat:
    """
    Opens the dead-chat text channel to members marked dead.

    Access is a per-member permission overwrite on one channel, so revoking it
    at the end of a game simply deletes the overwrite again. With no channel
    configured every call is a no-op.
    """

    def __init__(self, bot: discord.Client, channel_id: int = 0):
        self.bot = bot
        self.channel_id = int(channel_id or 0)

    @property
    def enabled(self) -> bool:
        return bool(self.channel_id)

    def _channel(self, guild_id: int):
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return None, None
        return guild, guild.get_channel(self.channel_id)

    async def grant(self, guild_id: int, user_id: int):
        if not self.enabled:
            return

        guild, channel = self._channel(guild_id)
        if channel is None:
            logger.warning(f"[DeadChat] Dead chat channel {self.channel_id} not found in guild {guild_id}.")
            return

        member = guild.get_member(user_id) or discord.Object(id=user_id)
        try:
            await channel.set_permissions(member, overwrite=ALLOW, reason="Marked dead")
        except discord.HTTPException as e:
            raise TransportFailure("opening dead chat", e) from e

        logger.info(f"[DeadChat] Granted dead chat to {user_id}.")

    async def revoke_all(self, guild_id: int, user_ids: Iterable[int]):
        user_ids = list(user_ids)
        if not self.enabled or not user_ids:
            return

        guild, channel = self._channel(guild_id)
        if channel is None:
            logger.warning(f"[DeadChat] Dead chat channel {self.channel_id} not found, can't revoke access.")
            return

        async def revoke(user_id):
            target = guild.get_member(user_id) or discord.Object(id=user_id)
            try:
                await channel.set_permissions(target, overwrite=None, reason="Game over")
            except discord.HTTPException as e:
                logger.warning(f"[DeadChat] Failed to revoke dead chat for {user_id}: {e}")

        await asyncio.gather(*(revoke(uid) for uid in user_ids))
        logger.info(f"[DeadChat] Revoked dead chat for {len(user_ids)} member(s).")
