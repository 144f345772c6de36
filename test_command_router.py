import pytest

from CommandRouter import Command, parse_command, parse_delay, parse_mention
from SessionErrors import MalformedCommand


def test_parse_recognised_commands():
    assert parse_command("~new") == Command("new", ())
    assert parse_command("~new 10") == Command("new", ("10",))
    assert parse_command("~dead <@123>") == Command("dead", ("<@123>",))
    assert parse_command("~end") == Command("end", ())
    assert parse_command("~stop   now") == Command("stop", ("now",))


def test_parse_ignores_everything_else():
    for content in ("", "new", "hello ~new", "~", "~ new", "~New", "~newgame", "!new", "~help"):
        assert parse_command(content) is None


def test_parse_honours_custom_prefix():
    assert parse_command("!end", prefix="!") == Command("end", ())
    assert parse_command("~end", prefix="!") is None


def test_argument_lookup():
    command = Command("new", ("3",))
    assert command.argument(0) == "3"
    assert command.argument(1) is None


def test_parse_delay():
    assert parse_delay(None, 5) == 5
    assert parse_delay("0", 5) == 0
    assert parse_delay("12", 5) == 12

    for bad in ("soon", "-1", "1.5"):
        with pytest.raises(MalformedCommand):
            parse_delay(bad, 5)


def test_parse_mention():
    assert parse_mention("<@123456789012345678>") == 123456789012345678
    assert parse_mention("<@!42>") == 42

    for bad in (None, "", "@someone", "42", "<@&42>", "<#42>"):
        with pytest.raises(MalformedCommand) as err:
            parse_mention(bad)
        assert err.value.reply == "You must mention the user you wish to die"
