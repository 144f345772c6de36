import re
from typing import NamedTuple, Optional, Tuple

from SessionErrors import MalformedCommand

"""
Text command parsing for the meeting bot.

Commands are a case-sensitive prefix followed by one of COMMANDS and
whitespace separated arguments, e.g. "~new 10" or "~dead @someone".
Anything else is not a command and is ignored.
"""

COMMANDS = ("new", "end", "dead", "stop")

_MENTION = re.compile(r"^<@!?(\d+)>$")


class Command(NamedTuple):
    name: str
    arguments: Tuple[str, ...] = ()

    def argument(self, index: int) -> Optional[str]:
        return self.arguments[index] if index < len(self.arguments) else None


def parse_command(content: str, prefix: str = "~") -> Optional[Command]:
    if not content or not content.startswith(prefix):
        return None

    rest = content[len(prefix):]
    if rest[:1].isspace():
        return None

    parts = rest.split()
    if not parts or parts[0] not in COMMANDS:
        return None

    return Command(parts[0], tuple(parts[1:]))


def parse_delay(arg: Optional[str], default: int) -> int:
    """
    Seconds to wait before the automatic mute.

    Args:
        arg (str): Raw argument, or None when omitted.
        default (int): Used when the argument is omitted.

    Returns:
        int: The delay. 0 means mute immediately.

    Raises:
        MalformedCommand: The argument is not a non-negative whole number.
    """
    if arg is None:
        return default
    try:
        delay = int(arg)
    except ValueError:
        raise MalformedCommand("The delay must be a whole number of seconds, e.g. ~new 5") from None
    if delay < 0:
        raise MalformedCommand("The delay must be a whole number of seconds, e.g. ~new 5")
    return delay


def parse_mention(arg: Optional[str]) -> int:
    """Return the user id from a <@id> or <@!id> mention."""
    match = _MENTION.match(arg or "")
    if not match:
        raise MalformedCommand("You must mention the user you wish to die")
    return int(match.group(1))
