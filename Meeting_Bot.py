# Meeting_Bot.py
from typing import Optional
import asyncio
import json
import os
import signal
import sys

import discord
from discord.ext import commands

import CommandRouter as CR
from DeadChat import DeadChat
from SessionErrors import (
    MalformedCommand,
    NoActiveSession,
    SessionError,
    TransportFailure,
    Unauthorized,
)
from SessionManager import ControlSymbol, GameSession, ReactionKind, SessionManager
from VoiceMuter import VoiceMuteCoordinator
from logger import setup_logging
import logging

"""
Discord bot moderating a social deduction game in voice chat.

Features:
- ~new starts a game and posts a control message carrying two reactions
- 🔴 on the control message calls an emergency meeting (server-mutes voice), removing it ends the meeting
- 💀 on the control message opens dead chat to whoever reacted
- ~dead <mention> lets the game's initiator or a bot owner mark someone else dead
- ~end ends the game, ~stop ends it and shuts the bot down
- Members this bot muted are always unmuted when the game ends
"""

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "COMMAND_PREFIX": "~",
    "DEFAULT_MUTE_DELAY": 5,
    "CONFIRMATION_DELETE_DELAY": 5,
    "DEAD_CHANNEL_ID": 0,
    "VOICE_CHANNEL_IDS": [],
    "OWNER_IDS": [],
    "LOG_DIR": "logs",
    "LOG_LEVEL": "INFO",
    "DISCORD_LOG_LEVEL": "WARNING",
}

CONTROL_MESSAGE = (
    "A game is in progress, {initiator} can react to this message with {emergency} to call a "
    "meeting.\nAnyone can react to this message with {dead} to access dead chat"
)

DEAD_PERMISSION_REPLY = (
    "You must have started the game or be an owner of the bot to make others dead\n"
    "To make yourself dead, please use the reactions"
)


class Meeting_Bot(commands.Bot):
    """
    Discord bot subclass routing gateway events to the game session.

    Text commands each run in their own task so a command waiting on a delay
    never holds up event handling. Reaction events are handled inline.

    Attributes:
        config (dict): Configuration loaded from JSON file, over DEFAULT_CONFIG.
        sessions (SessionManager): Owns the single game session and its lock.
        voice_muter (VoiceMuteCoordinator): Mutes/unmutes the voice channels.
        dead_chat (DeadChat): Grants dead members access to the dead chat channel.
        command_tasks (set[asyncio.Task]): Commands currently running.
    """

    def __init__(self, config_path="config.json"):
        """
        Initialize the bot with config, intents and the session collaborators.

        Args:
            config_path (str): Path to JSON configuration file.
        """

        with open(config_path) as f:
            self.config = {**DEFAULT_CONFIG, **json.load(f)}

        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        super().__init__(command_prefix=self.config["COMMAND_PREFIX"], intents=intents, help_command=None)

        self.voice_muter = VoiceMuteCoordinator(self, self.config["VOICE_CHANNEL_IDS"])
        self.dead_chat = DeadChat(self, self.config["DEAD_CHANNEL_ID"])
        self.sessions = SessionManager(self.voice_muter, self.dead_chat, owners=self.config["OWNER_IDS"])
        self.command_tasks: set[asyncio.Task] = set()

        self.command_handlers = {
            "new": self.command_new,
            "end": self.command_end,
            "dead": self.command_dead,
            "stop": self.command_stop,
        }

        # Every meaningful reaction on the control message, and what it does.
        self.reaction_transitions = {
            (ReactionKind.ADD, ControlSymbol.EMERGENCY): self._emergency_called,
            (ReactionKind.REMOVE, ControlSymbol.EMERGENCY): self._emergency_withdrawn,
            (ReactionKind.ADD, ControlSymbol.DEAD): self._dead_reacted,
        }

    async def setup_hook(self):
        # Owners come from the application itself: the whole team if there is one.
        app_info = await self.application_info()
        if app_info.team:
            owners = {member.id for member in app_info.team.members}
        else:
            owners = {app_info.owner.id}
        owners |= {int(o) for o in self.config["OWNER_IDS"]}

        self.owner_ids = owners
        self.sessions.set_owners(owners)

    def run(self):
        """
        Start the bot using the token loaded from config file.
        Overrides commands.Bot.run for clarity and encapsulation.
        """
        super().run(self.config["BOT_TOKEN"], log_handler=None)

    def handle_exit_signals(self, signum, frame):
        logger.info(f"Received exit signal {signum}, ending any running game.")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[handle_exit_signals] Event loop isn't running, nothing to clean up.")
            return

        async def shutdown_sequence():
            try:
                await self.clean_up_on_exit()
            except Exception as e:
                logger.exception(f"Cleanup failed with exception: {e}")
            await self.close()

        loop.create_task(shutdown_sequence())

    async def clean_up_on_exit(self):
        session = await self.sessions.shutdown()
        if session:
            await self._delete_control_message(session)

        pending = [t for t in self.command_tasks if not t.done()]
        for task in pending:
            task.cancel()
        logger.debug(f"Cancelled {len(pending)} running command(s) on exit.")

    # --------------- #
    #  Chat helpers   #
    # --------------- #

    async def _delete_quietly(self, message):
        try:
            await message.delete()
        except discord.HTTPException as e:
            logger.warning(f"Failed to delete message {message.id}: {e}")

    async def _reply(self, channel, content: str) -> Optional[discord.Message]:
        try:
            return await channel.send(content)
        except discord.HTTPException as e:
            logger.exception(f"Failed to send reply in channel {channel.id}: {e}")
            return None

    async def _delete_control_message(self, session: GameSession):
        if session.control_message is None or session.control_channel is None:
            return
        channel = self.get_channel(session.control_channel)
        if channel is None:
            logger.warning(f"Control channel {session.control_channel} not cached, leaving control message.")
            return
        await self._delete_quietly(channel.get_partial_message(session.control_message))

    async def _add_control_reactions(self, message: discord.Message):
        for symbol in ControlSymbol:
            try:
                await message.add_reaction(symbol.value)
            except discord.HTTPException as e:
                logger.warning(f"Failed to add {symbol.value} to control message {message.id}: {e}")

    # --------------- #
    #     Events      #
    # --------------- #

    async def on_ready(self):
        logger.info(f"Logged in as {self.user}")
        for guild in self.guilds:
            logger.info(f"Serving guild {guild.name} ({guild.id})")

    async def on_message(self, message: discord.Message):
        # ignore DMs & other bots (including ourselves)
        if message.author.bot or message.guild is None:
            return

        command = CR.parse_command(message.content, self.config["COMMAND_PREFIX"])
        if command is None:
            return

        self.spawn_command(message, command)

    def spawn_command(self, message: discord.Message, command: CR.Command) -> asyncio.Task:
        task = asyncio.create_task(self.process_command(message, command))
        self.command_tasks.add(task)
        task.add_done_callback(self.command_tasks.discard)
        return task

    async def process_command(self, message: discord.Message, command: CR.Command):
        handler = self.command_handlers[command.name]
        logger.info(f"[{command.name}] from {message.author} ({message.author.id}) args={command.arguments}")
        try:
            await handler(message, command)
        except MalformedCommand as e:
            logger.info(f"[{command.name}] Malformed command: {e.reply}")
            await self._reply(message.channel, e.reply)
        except TransportFailure as e:
            logger.error(f"[{command.name}] {e}: {e.cause}")
            await self._reply(message.channel, f"Sorry, something went wrong while {e.action}.")
        except SessionError as e:
            logger.info(f"[{command.name}] Rejected: {e.reply}")
            await self._reply(message.channel, e.reply)
        except asyncio.CancelledError:
            logger.info(f"[{command.name}] Cancelled.")
            raise
        except Exception as e:
            logger.exception(f"[{command.name}] Unexpected error: {e}")

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent):
        await self.handle_reaction(ReactionKind.ADD, payload)

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent):
        await self.handle_reaction(ReactionKind.REMOVE, payload)

    async def handle_reaction(self, kind: ReactionKind, payload: discord.RawReactionActionEvent):
        if self.user is not None and payload.user_id == self.user.id:
            return

        # Cheap filter only, the transition re-checks the message under the session lock.
        symbol = self.sessions.binding.classify(payload)
        if symbol is None:
            return

        transition = self.reaction_transitions.get((kind, symbol))
        if transition is None:
            return

        try:
            await transition(payload)
        except SessionError as e:
            logger.warning(f"[Reactions] {kind.value} {symbol.value} by {payload.user_id} failed: {e}")

    async def _emergency_called(self, payload: discord.RawReactionActionEvent):
        if not await self.sessions.call_emergency_meeting(actor=payload.user_id, message_id=payload.message_id):
            logger.info(f"[Reactions] Meeting call by {payload.user_id} rejected.")

    async def _emergency_withdrawn(self, payload: discord.RawReactionActionEvent):
        if not await self.sessions.withdraw_emergency(actor=payload.user_id, message_id=payload.message_id):
            logger.info(f"[Reactions] Meeting withdrawal by {payload.user_id} rejected.")

    async def _dead_reacted(self, payload: discord.RawReactionActionEvent):
        await self.sessions.mark_dead(payload.user_id, message_id=payload.message_id)

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent):
        if not self.sessions.binding.is_control_message(payload.message_id):
            return

        logger.warning(f"Control message {payload.message_id} was deleted, ending the game.")
        try:
            await self.sessions.end(expected=self.sessions.session)
        except NoActiveSession:
            pass

    async def on_voice_state_update(self, member: discord.Member, before: discord.VoiceState,
                                    after: discord.VoiceState):
        if after.channel is not None and after.channel != before.channel:
            await self.sessions.on_voice_join(member)

    # --------------- #
    #    Commands     #
    # --------------- #

    async def command_new(self, message: discord.Message, command: CR.Command):
        """
        Start a game, post the control message and mute voice after a delay.

        Args:
            message (discord.Message): The ~new message.
            command (CR.Command): Parsed command, optional first argument is the delay in seconds.
        """
        await self._delete_quietly(message)
        delay = CR.parse_delay(command.argument(0), int(self.config["DEFAULT_MUTE_DELAY"]))

        session = await self.sessions.start(message.author.id, message.guild.id)

        try:
            control = await message.channel.send(CONTROL_MESSAGE.format(
                initiator=message.author.mention,
                emergency=ControlSymbol.EMERGENCY.value,
                dead=ControlSymbol.DEAD.value,
            ))
        except discord.HTTPException as e:
            await self.sessions.abandon(session)
            raise TransportFailure("posting the control message", e) from e

        try:
            await self.sessions.bind_control_message(control.id, control.channel.id)
        except NoActiveSession:
            logger.info("[new] Game ended before its control message was bound.")
            await self._delete_quietly(control)
            return

        reactions = asyncio.create_task(self._add_control_reactions(control))

        if delay == 0:
            await self.sessions.mute_players(session)
        else:
            self.sessions.schedule_mute(session, delay)

        await reactions

    async def command_end(self, message: discord.Message, command: CR.Command):
        await self._delete_quietly(message)

        session = await self.sessions.end(actor=message.author.id)
        await self._delete_control_message(session)

    async def command_dead(self, message: discord.Message, command: CR.Command):
        await self._delete_quietly(message)

        if not self.sessions.is_in_control(message.author.id):
            if self.sessions.is_in_progress():
                raise Unauthorized(DEAD_PERMISSION_REPLY)
            raise NoActiveSession()

        if not self.sessions.is_in_progress():
            raise NoActiveSession()

        target = CR.parse_mention(command.argument(0))
        try:
            await self.sessions.mark_dead(target, actor=message.author.id)
        except Unauthorized:
            raise Unauthorized(DEAD_PERMISSION_REPLY) from None
        reply = await self._reply(message.channel, f"deadifying <@{target}>")

        if reply:
            await asyncio.sleep(self.config["CONFIRMATION_DELETE_DELAY"])
            await self._delete_quietly(reply)

    async def command_stop(self, message: discord.Message, command: CR.Command):
        await self._delete_quietly(message)

        if not self.sessions.is_in_control(message.author.id):
            raise Unauthorized("You must have started the game or be an owner of the bot to stop it")

        session = await self.sessions.shutdown()
        if session:
            await self._delete_control_message(session)

        logger.info(f"Stop requested by {message.author.id}, shutting down.")
        await self.close()


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("MEETING_BOT_CONFIG", "config.json")
    bot = Meeting_Bot(config_path)
    setup_logging(bot.config["LOG_DIR"], bot.config["LOG_LEVEL"], bot.config["DISCORD_LOG_LEVEL"])
    signal.signal(signal.SIGINT, bot.handle_exit_signals)
    signal.signal(signal.SIGTERM, bot.handle_exit_signals)
    bot.run()


# Run the bot
if __name__ == "__main__":
    main()
