"""
Command Catalog Module

Names, usage lines and visibility rules of every request command. Each help
line starts with an audience marker:

    "!"  anonymous sessions only
    "*"  authenticated sessions only
    " "  everyone

Administrator commands are only listed for administrators.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


HELP_HEADER = "Available commands:"


class Command(Enum):
    """Request commands understood by the server"""
    HELP = "help"
    LOGIN = "login"
    BALANCE = "balance"
    WITHDRAW = "withdraw"
    LOGOUT = "logout"
    QUIT = "quit"
    EXIT = "exit"
    CHANGE_BALANCE = "changebalance"
    CHECK_BALANCE = "checkbalance"
    CREATE_USER = "createuser"


class Audience(Enum):
    """Who a help line is shown to"""
    ANONYMOUS = "!"
    AUTHENTICATED = "*"
    EVERYONE = " "


@dataclass(frozen=True)
class CommandSpec:
    """Help catalog entry for one command"""
    command: Command
    usage: str
    audience: Audience
    admin_only: bool = False

    @property
    def help_line(self) -> str:
        """Catalog line with its audience marker"""
        return f"{self.audience.value}{self.usage}"

    def visible_to(self, logged_in: bool, is_admin: bool) -> bool:
        """Check if the command is offered to a session in this state"""
        if self.admin_only and not is_admin:
            return False
        if logged_in:
            return self.audience in (Audience.AUTHENTICATED, Audience.EVERYONE)
        return self.audience in (Audience.ANONYMOUS, Audience.EVERYONE)


ADMIN_COMMANDS: List[CommandSpec] = [
    CommandSpec(Command.CHANGE_BALANCE,
                "changebalance <username> <amount> - change user balance by given amount",
                Audience.AUTHENTICATED, admin_only=True),
    CommandSpec(Command.CHECK_BALANCE,
                "checkbalance <username> - check balance for given user",
                Audience.AUTHENTICATED, admin_only=True),
    CommandSpec(Command.CREATE_USER,
                "createuser <username> <password> - create new user with given username/password",
                Audience.AUTHENTICATED, admin_only=True),
]

USER_COMMANDS: List[CommandSpec] = [
    CommandSpec(Command.HELP,
                "help [command] - this help message or command usage if [command] is defined",
                Audience.EVERYONE),
    CommandSpec(Command.LOGIN,
                "login <login> <password> - login as user with specified <login>/<password> pair",
                Audience.ANONYMOUS),
    CommandSpec(Command.BALANCE,
                "balance - shows actual account balance",
                Audience.AUTHENTICATED),
    CommandSpec(Command.WITHDRAW,
                "withdraw <amount> - withdraw <amount> of money from your account",
                Audience.AUTHENTICATED),
    CommandSpec(Command.LOGOUT,
                "logout - log out from system",
                Audience.AUTHENTICATED),
    CommandSpec(Command.QUIT,
                "quit - close connection",
                Audience.EVERYONE),
]

CATALOG = {spec.command: spec for spec in ADMIN_COMMANDS + USER_COMMANDS}


def lookup(name: str) -> Optional[Command]:
    """Find the command for a (case-insensitive) name"""
    try:
        return Command(name.lower())
    except ValueError:
        return None


def render_help(is_admin: bool) -> str:
    """Full help catalog, administrator commands first"""
    specs = (ADMIN_COMMANDS if is_admin else []) + USER_COMMANDS
    return "\n".join([HELP_HEADER] + [spec.help_line for spec in specs])


def usage_text(name: str, logged_in: bool, is_admin: bool) -> Optional[str]:
    """Usage line for a command, None if the session cannot see it"""
    command = lookup(name)
    spec = CATALOG.get(command) if command else None
    if spec is None or not spec.visible_to(logged_in, is_admin):
        return None
    return f"Command usage: {spec.usage}"


def filter_help(help_text: str, logged_in: bool) -> str:
    """
    Keep the catalog lines meant for the given login state, markers removed

    Lines without a marker (such as the header) are dropped.
    """
    wanted = (Audience.AUTHENTICATED.value if logged_in else Audience.ANONYMOUS.value,
              Audience.EVERYONE.value)
    lines = [
        line[1:] for line in help_text.splitlines()
        if line and line[0] in wanted
    ]
    return "".join(line + "\n" for line in lines)
