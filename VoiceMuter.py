import asyncio
import logging
from typing import Iterable, List, Set

import discord

logger = logging.getLogger(__name__)


class VoiceMuteCoordinator:
    """
    Applies server mute to the members sitting in the game's voice channels.

    Only members muted here are ever unmuted here. Members who were already
    server-muted by someone else are left alone and never tracked.

    Attributes:
        bot (discord.Client): Used to resolve guilds and members from its cache.
        channel_ids (set[int]): Voice channels to manage. Empty means every voice channel.
        muted (set[int]): Members currently server-muted by this coordinator.
        pending_unmute (set[int]): Members we muted who left voice before we could unmute them.
        holding (bool): True from a mute_all until the next unmute_all.
    """

    def __init__(self, bot: discord.Client, channel_ids: Iterable[int] = ()):
        self.bot = bot
        self.channel_ids: Set[int] = {int(c) for c in channel_ids}
        self.muted: Set[int] = set()
        self.pending_unmute: Set[int] = set()
        self.holding = False

    def is_watched(self, channel) -> bool:
        if channel is None:
            return False
        return not self.channel_ids or channel.id in self.channel_ids

    def voice_members(self, guild: discord.Guild) -> List[discord.Member]:
        """Non-bot members currently connected to a watched voice channel."""
        members = []
        for channel in guild.voice_channels:
            if not self.is_watched(channel):
                continue
            for member in channel.members:
                if member.bot:
                    continue
                if member.voice and member.voice.channel == channel:
                    members.append(member)
        return members

    async def _set_mute(self, member: discord.Member, mute: bool, reason: str) -> bool:
        try:
            await member.edit(mute=mute, reason=reason)
            return True
        except discord.HTTPException as e:
            logger.warning(f"[VoiceMuter] Failed to set mute={mute} for {member} ({member.id}): {e}")
            return False

    async def mute_all(self, guild_id: int, reason: str = "Emergency meeting") -> List[int]:
        """
        Server-mute everyone in the watched voice channels.

        Returns:
            list[int]: Ids of members whose mute request failed.
        """
        self.holding = True
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            logger.warning(f"[VoiceMuter] Guild {guild_id} is not cached, nobody to mute.")
            return []

        targets = []
        for member in self.voice_members(guild):
            if member.id in self.muted:
                continue
            if member.id in self.pending_unmute:
                # Still muted from an earlier round, take it back under tracking.
                self.pending_unmute.discard(member.id)
                self.muted.add(member.id)
                continue
            if member.voice.mute:
                continue
            targets.append(member)

        results = await asyncio.gather(*(self._set_mute(m, True, reason) for m in targets))

        failed = []
        for member, ok in zip(targets, results):
            if ok:
                self.muted.add(member.id)
            else:
                failed.append(member.id)

        logger.info(f"[VoiceMuter] Muted {len(targets) - len(failed)} member(s) in guild {guild_id}, "
                    f"{len(self.muted)} held, {len(failed)} failed.")
        return failed

    async def unmute_all(self, guild_id: int, reason: str = "Meeting over") -> List[int]:
        """
        Unmute every member this coordinator muted.

        Members no longer connected to voice can't be unmuted over HTTP, so they
        wait in pending_unmute until on_voice_join sees them again.

        Returns:
            list[int]: Ids of members whose unmute request failed.
        """
        self.holding = False
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            logger.warning(f"[VoiceMuter] Guild {guild_id} is not cached, deferring {len(self.muted)} unmute(s).")
            self.pending_unmute |= self.muted
            self.muted.clear()
            return []

        targets = []
        for member_id in list(self.muted):
            member = guild.get_member(member_id)
            if member is None or member.voice is None or member.voice.channel is None:
                self.muted.discard(member_id)
                self.pending_unmute.add(member_id)
                continue
            targets.append(member)

        results = await asyncio.gather(*(self._set_mute(m, False, reason) for m in targets))

        failed = []
        for member, ok in zip(targets, results):
            if ok:
                self.muted.discard(member.id)
            else:
                failed.append(member.id)

        logger.info(f"[VoiceMuter] Unmuted {len(targets) - len(failed)} member(s) in guild {guild_id}, "
                    f"{len(self.pending_unmute)} pending, {len(failed)} failed.")
        return failed

    async def on_voice_join(self, member: discord.Member):
        """Bring a member who just connected (or moved) in line with the current mute state."""
        if member.bot or member.voice is None:
            return

        if member.id in self.pending_unmute:
            if await self._set_mute(member, False, "Meeting over"):
                self.pending_unmute.discard(member.id)
                logger.info(f"[VoiceMuter] Applied deferred unmute to {member} ({member.id}).")
            return

        if (
            self.holding
            and self.is_watched(member.voice.channel)
            and member.id not in self.muted
            and not member.voice.mute
        ):
            if await self._set_mute(member, True, "Emergency meeting"):
                self.muted.add(member.id)
                logger.info(f"[VoiceMuter] Muted late joiner {member} ({member.id}).")
