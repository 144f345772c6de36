import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Set

import discord

from DeadChat import DeadChat
from SessionErrors import NoActiveSession, SessionAlreadyActive, Unauthorized
from VoiceMuter import VoiceMuteCoordinator

logger = logging.getLogger(__name__)


class ControlSymbol(str, Enum):
    EMERGENCY = "🔴"
    DEAD = "💀"


class ReactionKind(Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass
class GameSession:
    """
    One running game, from ~new until ~end or ~stop.

    Attributes:
        initiator (int): Discord id of the user who started the game.
        guild (int): Guild the game is played in.
        control_message (int): Message carrying the meeting/dead reactions, once posted.
        control_channel (int): Channel the control message lives in.
        dead_members (set[int]): Members given access to dead chat this game.
        meeting_active (bool): True while an emergency meeting holds voice muted.
        pending_mute (asyncio.Task): Delayed mute scheduled by ~new, if still waiting.
    """
    initiator: int
    guild: int
    control_message: Optional[int] = None
    control_channel: Optional[int] = None
    dead_members: Set[int] = field(default_factory=set)
    meeting_active: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pending_mute: Optional[asyncio.Task] = field(default=None, repr=False)


def is_authorized(actor: int, session: Optional[GameSession], owners: FrozenSet[int]) -> bool:
    """Owners always pass; otherwise only the initiator of the running game."""
    if actor in owners:
        return True
    return session is not None and actor == session.initiator


class ControlMessageBinding:
    """Decides whether a reaction event lands on the live control message."""

    def __init__(self, sessions: "SessionManager"):
        self.sessions = sessions

    def is_control_message(self, message_id: int) -> bool:
        session = self.sessions.session
        if session is None or session.control_message is None:
            return False
        return message_id == session.control_message

    def is_control_reaction(self, payload: discord.RawReactionActionEvent) -> bool:
        return self.is_control_message(payload.message_id)

    def classify(self, payload: discord.RawReactionActionEvent) -> Optional[ControlSymbol]:
        """
        Map a reaction to one of the two control symbols.

        Returns:
            ControlSymbol or None: None for reactions on any other message
            (including a previous game's control message) and for any other emoji.
        """
        if not self.is_control_reaction(payload):
            return None
        try:
            return ControlSymbol(str(payload.emoji))
        except ValueError:
            return None


class SessionManager:
    """
    Owns the single game session the bot can run at a time.

    Every read-modify-write of the session, and the voice change that goes
    with it, happens under one asyncio.Lock so concurrent commands and
    reaction events can't leave mute state out of step with the game.
    Waiting (the delay before the automatic mute) never holds the lock.

    Attributes:
        voice (VoiceMuteCoordinator): Applies server mute/unmute.
        dead_chat (DeadChat): Opens the dead chat channel to dead members.
        binding (ControlMessageBinding): Classifies reactions against the current session.
    """

    def __init__(self, voice: VoiceMuteCoordinator, dead_chat: Optional[DeadChat] = None,
                 owners: Iterable[int] = ()):
        self.voice = voice
        self.dead_chat = dead_chat
        self.binding = ControlMessageBinding(self)
        self._owners: FrozenSet[int] = frozenset(int(o) for o in owners)
        self._session: Optional[GameSession] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[GameSession]:
        return self._session

    @property
    def owners(self) -> FrozenSet[int]:
        return self._owners

    def set_owners(self, owners: Iterable[int]):
        self._owners = frozenset(int(o) for o in owners)
        logger.info(f"[SessionManager] Loaded {len(self._owners)} owner(s).")

    def _require(self) -> GameSession:
        if self._session is None:
            raise NoActiveSession()
        return self._session

    def _cancel_pending(self, session: GameSession):
        task = session.pending_mute
        if task and not task.done() and asyncio.current_task() is not task:
            logger.info("[SessionManager] Cancelling pending automatic mute.")
            task.cancel()
        session.pending_mute = None

    def _accepts(self, session: GameSession, message_id: Optional[int] = None,
                 actor: Optional[int] = None) -> bool:
        """
        Re-check an event against the session it is about to change.

        Callers hold the lock. Events are filtered before they queue on it, so a
        game may have ended (or another begun) in between.

        Args:
            session (GameSession): The current session.
            message_id (int, optional): Message the triggering reaction was on.
            actor (int, optional): User who must be in control of `session`.
        """
        if message_id is not None and session.control_message != message_id:
            logger.info(f"[SessionManager] Ignoring reaction on {message_id}, "
                        f"the control message is {session.control_message}.")
            return False
        if actor is not None and not is_authorized(actor, session, self._owners):
            logger.info(f"[SessionManager] {actor} is not in control of the game started by {session.initiator}.")
            return False
        return True

    # --- Lifecycle ---

    async def start(self, initiator_id: int, guild_id: int) -> GameSession:
        async with self._lock:
            if self._session is not None:
                raise SessionAlreadyActive()
            self._session = GameSession(initiator=initiator_id, guild=guild_id)
            logger.info(f"[SessionManager] Game started by {initiator_id} in guild {guild_id}.")
            return self._session

    async def abandon(self, session: GameSession):
        """Drop a session that never became controllable, without touching voice."""
        async with self._lock:
            if self._session is session:
                self._cancel_pending(session)
                self._session = None
                logger.warning(f"[SessionManager] Rolled back game started by {session.initiator}.")

    async def bind_control_message(self, message_id: int, channel_id: Optional[int] = None):
        async with self._lock:
            session = self._require()
            if session.control_message is not None:
                if session.control_message != message_id:
                    logger.warning(f"[SessionManager] Control message already bound to "
                                   f"{session.control_message}, ignoring {message_id}.")
                return
            session.control_message = message_id
            session.control_channel = channel_id
            logger.info(f"[SessionManager] Control message bound to {message_id}.")

    async def end(self, expected: Optional[GameSession] = None, actor: Optional[int] = None) -> GameSession:
        """
        End the running game: unmute everyone we muted and close dead chat.

        Args:
            expected (GameSession, optional): Only end if this is still the running game.
            actor (int, optional): User asking to end it, who must be in control of it.

        Returns:
            GameSession: The session that was ended, so its control message can be cleaned up.

        Raises:
            NoActiveSession: No game is running (or the expected one already ended).
            Unauthorized: `actor` did not start the running game and is not an owner.
        """
        async with self._lock:
            session = self._require()
            if expected is not None and session is not expected:
                raise NoActiveSession()
            if not self._accepts(session, actor=actor):
                raise Unauthorized("You must have started the game or be an owner of the bot to end it")

            self._cancel_pending(session)
            session.meeting_active = False
            await self.voice.unmute_all(session.guild, reason="Game over")

            dead = set(session.dead_members)
            if self.dead_chat:
                await self.dead_chat.revoke_all(session.guild, dead)
            session.dead_members.clear()

            self._session = None

        logger.info(f"[SessionManager] Game started by {session.initiator} ended "
                    f"({len(dead)} dead member(s)).")
        return session

    async def shutdown(self) -> Optional[GameSession]:
        """End the game if one is running. Used when the bot is stopping."""
        try:
            return await self.end()
        except NoActiveSession:
            return None

    # --- Queries ---

    def is_in_progress(self) -> bool:
        return self._session is not None

    def is_in_control(self, user_id: int) -> bool:
        return is_authorized(user_id, self._session, self._owners)

    # --- Transitions ---

    async def mark_dead(self, user_id: int, message_id: Optional[int] = None,
                        actor: Optional[int] = None) -> bool:
        """
        Open dead chat for a member and add them to the dead set.

        The member only counts as dead once access is granted, so a failed
        grant can be retried with another reaction or ~dead.

        Args:
            user_id (int): Member to mark dead.
            message_id (int, optional): Message of the 💀 reaction, must be the control message.
            actor (int, optional): User marking someone else dead, must be in control.

        Returns:
            bool: True if the member was newly marked, False if already dead, no game
            runs or the reaction was on another message.

        Raises:
            Unauthorized: `actor` is not in control of the running game.
            TransportFailure: Discord refused the dead chat overwrite.
        """
        async with self._lock:
            session = self._session
            if session is None or not self._accepts(session, message_id=message_id):
                return False
            if not self._accepts(session, actor=actor):
                raise Unauthorized()
            if user_id in session.dead_members:
                return False
            if self.dead_chat:
                await self.dead_chat.grant(session.guild, user_id)
            session.dead_members.add(user_id)
            logger.info(f"[SessionManager] {user_id} is dead.")
            return True

    async def call_emergency_meeting(self, actor: Optional[int] = None, message_id: Optional[int] = None) -> bool:
        async with self._lock:
            session = self._require()
            if not self._accepts(session, message_id, actor):
                return False
            session.meeting_active = True
            logger.info("[SessionManager] Emergency meeting called.")
            await self.voice.mute_all(session.guild, reason="Emergency meeting")
            return True

    async def withdraw_emergency(self, actor: Optional[int] = None, message_id: Optional[int] = None) -> bool:
        async with self._lock:
            session = self._session
            if session is None or not self._accepts(session, message_id, actor):
                return False
            session.meeting_active = False
            logger.info("[SessionManager] Emergency meeting withdrawn.")
            await self.voice.unmute_all(session.guild, reason="Meeting over")
            return True

    async def mute_players(self, session: Optional[GameSession] = None) -> bool:
        """
        Mute the voice channels regardless of meeting state.

        Args:
            session (GameSession, optional): Only mute if this game is still running.
                A delayed mute passes the game it was scheduled for.

        Returns:
            bool: False if there was nothing to mute for.
        """
        async with self._lock:
            current = self._session
            if current is None or (session is not None and session is not current):
                logger.info("[SessionManager] Skipping mute, the game it was meant for is over.")
                return False
            failed = await self.voice.mute_all(current.guild, reason="Game in progress")
            if failed:
                logger.warning(f"[SessionManager] Could not mute {len(failed)} member(s): {failed}")
            return True

    def schedule_mute(self, session: GameSession, delay: float) -> asyncio.Task:
        """Mute after `delay` seconds unless the game ends first."""

        async def delayed_mute():
            try:
                await asyncio.sleep(delay)
                await self.mute_players(session)
            except asyncio.CancelledError:
                logger.info("[SessionManager] Automatic mute cancelled - game likely ended early.")
                return
            except Exception as e:
                logger.exception(f"[SessionManager] Automatic mute failed: {e}")

        if session.pending_mute and not session.pending_mute.done():
            session.pending_mute.cancel()

        session.pending_mute = asyncio.create_task(delayed_mute())
        logger.info(f"[SessionManager] Muting in {delay} seconds.")
        return session.pending_mute

    async def on_voice_join(self, member: discord.Member):
        async with self._lock:
            await self.voice.on_voice_join(member)
