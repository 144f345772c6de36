"""
Exception hierarchy for the meeting bot.

SessionManager raises these; Meeting_Bot turns them into chat replies or log lines.
"""


class SessionError(Exception):
    """Base exception for all session control errors."""

    reply = "Something went wrong."

    def __init__(self, message: str = None):
        super().__init__(message or self.reply)
        self.reply = message or self.reply


class SessionAlreadyActive(SessionError):
    reply = "A game is already in progress, end it with ~end first."


class NoActiveSession(SessionError):
    reply = "There is no game running"


class Unauthorized(SessionError):
    reply = "You must have started the game or be an owner of the bot to do that"


class TransportFailure(SessionError):
    """An outbound Discord call failed on an action the command depends on."""

    def __init__(self, action: str, cause: Exception = None):
        self.action = action
        self.cause = cause
        super().__init__(f"Discord request failed while {action}")


class MalformedCommand(SessionError):
    """A command argument was missing or could not be parsed.

    The message is the corrective reply shown to the user.
    """
