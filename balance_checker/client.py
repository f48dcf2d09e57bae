"""
Interactive Client Module

Line-oriented console client. Mirrors the session state announced by the
server (login, username, balance, help catalog), renders a text menu and
forwards what the user types as request lines.
"""

import argparse
import socket
import sys
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, TextIO, Tuple

from .amounts import ZERO, format_amount, parse_amount
from .commands import filter_help
from .config import get_config
from .logging_config import get_logger, setup_logging
from .protocol import DecodedItem, MalformedFragment, Tag, decode_batch


SEPARATOR = "-----------------------------------------\n"
UNKNOWN_RESPONSE_MESSAGE = "Server response contains errors"
NOT_ALLOWED_MESSAGE = "You are not allowed to perform this action"
QUIT_COMMANDS = ("quit", "exit")

logger = get_logger("balance_checker.client")


@dataclass
class ClientState:
    """Client side copy of the session state"""
    logged_in: bool = False
    is_admin: bool = False
    username: str = ""
    balance: Decimal = ZERO

    def log_out(self) -> None:
        """Forget the identity announced by the server"""
        self.logged_in = False
        self.is_admin = False
        self.username = ""
        self.balance = ZERO


class ClientView:
    """Buffers server output and renders the prompt"""

    def __init__(self, output: Optional[TextIO] = None, errors: Optional[TextIO] = None):
        self.output = output or sys.stdout
        self.errors = errors or sys.stderr
        self.help_text = ""
        self._buffer: List[str] = []

    def print(self, message: str) -> None:
        """Queue a message for the next prompt"""
        self._buffer.append(message)

    def print_error(self, message: str) -> None:
        """Write a message to the error stream right away"""
        self.errors.write(message + "\n")
        self.errors.flush()

    def unknown_response(self) -> None:
        """Report a response the client could not interpret"""
        self.print(UNKNOWN_RESPONSE_MESSAGE)

    def render_prompt(self, state: ClientState) -> str:
        """Build the menu for the current state and clear the buffer"""
        menu = [SEPARATOR]
        if state.logged_in:
            level = "Administrator" if state.is_admin else "Regular User"
            menu.append(f"{state.username} ({level})\n")
            menu.append(SEPARATOR)
            menu.append(f"Your balance: {format_amount(state.balance)} $\n")
        else:
            menu.append("You are not logged in\n")

        menu.append(SEPARATOR)
        menu.append(filter_help(self.help_text, state.logged_in) + "\n")
        menu.append(SEPARATOR)
        server_output = "".join(self._buffer) if self._buffer else "[Empty]"
        menu.append(f"Server output: {server_output}\n")
        menu.append(SEPARATOR)
        menu.append("\n$ ")

        self._buffer = []
        return "".join(menu)

    def show_prompt(self, state: ClientState) -> None:
        """Write the menu for the current state to the output stream"""
        self.output.write(self.render_prompt(state))
        self.output.flush()


def apply_response(item: DecodedItem, state: ClientState, view: ClientView) -> None:
    """Apply one decoded response message to the client state"""
    if isinstance(item, MalformedFragment):
        view.unknown_response()
        return

    tag, payload = item.tag, item.payload
    if tag == Tag.TEXT.value:
        view.print(payload)
    elif tag == Tag.USERNAME.value:
        if state.logged_in:
            state.username = payload
    elif tag == Tag.LOGIN.value:
        if payload == "admin":
            state.logged_in, state.is_admin = True, True
        elif payload == "user":
            state.logged_in, state.is_admin = True, False
    elif tag == Tag.LOGOUT.value:
        state.log_out()
    elif tag == Tag.BALANCE.value:
        if state.logged_in:
            balance = parse_amount(payload)
            if balance is None:
                state.balance = ZERO
                view.unknown_response()
            else:
                state.balance = balance
    elif tag == Tag.HELP.value:
        view.help_text = payload
    elif tag == Tag.ACTION_NOT_ALLOWED.value:
        view.print(NOT_ALLOWED_MESSAGE)
    else:
        view.unknown_response()


class BalanceClient:
    """Console client for one server connection"""

    def __init__(self, host: str, port: int, view: Optional[ClientView] = None):
        self.host = host
        self.port = port
        self.view = view or ClientView()
        self.state = ClientState()

    def run(self, user_input: Optional[TextIO] = None) -> int:
        """Connect and interact until the user quits or the server closes"""
        user_input = user_input or sys.stdin
        try:
            sock = socket.create_connection((self.host, self.port))
        except OSError as e:
            logger.error(f"Cannot connect to {self.host}:{self.port}: {e}")
            self.view.print_error(str(e))
            return 1

        with sock, \
                sock.makefile("r", encoding="utf-8", errors="replace", newline="\n") as reader, \
                sock.makefile("w", encoding="utf-8", newline="\n") as writer:
            try:
                self.interact(reader, writer, user_input)
            except OSError as e:
                logger.error(f"Connection to server failed: {e}")
                self.view.print_error(str(e))
                return 1
        return 0

    def interact(self, reader: TextIO, writer: TextIO, user_input: TextIO) -> None:
        """Alternate between server responses and user requests"""
        while True:
            line = reader.readline()
            if not line:
                self.view.print_error("Connection closed by server")
                break

            for item in decode_batch(line):
                apply_response(item, self.state, self.view)

            self.view.show_prompt(self.state)
            request = user_input.readline()
            if not request:
                request = "quit"
            request = request.rstrip("\r\n")

            if request.strip().lower() in QUIT_COMMANDS:
                writer.write("quit\n")
                writer.flush()
                break

            writer.write(request + "\n")
            writer.flush()


def parse_arguments(argv: List[str], view: ClientView) -> Tuple[str, int]:
    """
    Resolve host and port from "<host> <port>"

    Missing arguments fall back to the configured defaults, a bad port keeps
    the host and uses the default port. Both cases print a warning.
    """
    config = get_config()
    host, port = config.client_host, config.client_port

    if len(argv) != 2:
        view.print_error(
            f"Arguments missing. Using default values ({host} {port})\n"
            "Usage example:\nbalance-client <host> <port> - connect to <host> on <port>."
        )
        return host, port

    host = argv[0]
    try:
        port = int(argv[1])
    except ValueError:
        view.print_error("Wrong port number. Default port used")
    return host, port


def main(argv: Optional[List[str]] = None) -> int:
    """Client entry point"""
    parser = argparse.ArgumentParser(prog="balance-client", description="Balance checker client")
    parser.add_argument("target", nargs="*", help="<host> <port>")
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(config.log_level, logger_name="balance_checker.client",
                  log_format="text", log_file=config.log_file)

    view = ClientView()
    host, port = parse_arguments(args.target, view)
    return BalanceClient(host, port, view).run()


if __name__ == "__main__":
    sys.exit(main())
