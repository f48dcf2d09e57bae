"""
Session Dispatcher Module

Per-connection control loop. Reads one request line, checks the caller's
role and the argument count, runs the command against the connection's
AccountSession and answers with exactly one encoded response line.

Guard failures never close the connection: the caller gets the command's
usage line, or the unknown-command message when the command is not visible
to it.
"""

from decimal import Decimal
from typing import Callable, Dict, List, Optional, TextIO, Tuple

from .accounts import AccountSession, LoginResult
from .amounts import format_amount
from .commands import Command, lookup, render_help, usage_text
from .logging_config import get_logger, log_action
from .protocol import Message, Tag, decode_request, encode_batch, find_collisions


UNKNOWN_COMMAND_MESSAGE = "Unknown command, type help to list all available commands."
LOGIN_FAILED_MESSAGE = "Invalid login and/or password"
LOGOUT_MESSAGE = "You are safely logged out"


class ResponseBuffer:
    """Messages collected during one request cycle"""

    def __init__(self, connection_id: int = 0):
        self.connection_id = connection_id
        self.logger = get_logger("balance_checker.dispatcher")
        self._messages: List[Message] = []

    def send(self, payload: str, tag: Tag = Tag.TEXT) -> None:
        """Queue one message for the next flush"""
        collisions = find_collisions(payload)
        if collisions:
            log_action(
                self.logger, "warning", "Response payload contains reserved sequences",
                connection_id=self.connection_id, action="encode",
                extra={"tag": tag.value, "reserved": collisions}
            )
        self._messages.append(Message(tag.value, payload))

    def flush(self) -> str:
        """Encode and clear the queued messages"""
        line = encode_batch(self._messages)
        self._messages = []
        return line

    def __len__(self) -> int:
        return len(self._messages)


class SessionDispatcher:
    """
    Drives one client connection

    The dispatcher owns its AccountSession and ResponseBuffer exclusively.
    Requests are handled strictly one after another.
    """

    def __init__(self, session: AccountSession, connection_id: int = 0, fold_case: bool = False):
        self.session = session
        self.connection_id = connection_id
        self.fold_case = fold_case
        self.responses = ResponseBuffer(connection_id)
        self.active = True
        self.logger = get_logger("balance_checker.dispatcher")

        self._handlers: Dict[Command, Callable[[Tuple[str, ...]], None]] = {
            Command.HELP: self._help,
            Command.LOGIN: self._login,
            Command.BALANCE: self._balance,
            Command.WITHDRAW: self._withdraw,
            Command.LOGOUT: self._logout,
            Command.QUIT: self._quit,
            Command.EXIT: self._quit,
            Command.CHANGE_BALANCE: self._change_balance,
            Command.CHECK_BALANCE: self._check_balance,
            Command.CREATE_USER: self._create_user,
        }

    def greet(self) -> str:
        """Greeting line sent right after the connection is accepted"""
        self._send_help_catalog()
        return self.responses.flush()

    def handle_line(self, line: Optional[str]) -> Optional[str]:
        """
        Handle one request line, None meaning end of stream

        Returns the response line, or None once the connection is closing.
        """
        request = decode_request(line, fold_case=self.fold_case)
        log_action(
            self.logger, "info", f"Request {request.command!r}",
            connection_id=self.connection_id, username=self.session.username,
            action="request", extra={"args": len(request.args)}
        )

        command = lookup(request.command) if request.command else None
        if command is None:
            self.responses.send(UNKNOWN_COMMAND_MESSAGE)
        else:
            self._handlers[command](request.args)

        if not self.active:
            self.responses.flush()
            return None
        return self.responses.flush()

    def run(self, reader: TextIO, writer: TextIO) -> None:
        """
        Serve a connection until quit, end of stream or a read failure

        Write failures propagate to the caller, which owns the transport.
        """
        self._write(writer, self.greet())

        while self.active:
            try:
                line = reader.readline()
            except OSError as e:
                log_action(
                    self.logger, "error", f"Read failed: {e}",
                    connection_id=self.connection_id, action="read"
                )
                self.active = False
                break

            response = self.handle_line(line if line else None)
            if response is not None:
                self._write(writer, response)

    @staticmethod
    def _write(writer: TextIO, response: str) -> None:
        writer.write(response + "\n")
        writer.flush()

    def _usage(self, command: Command) -> None:
        text = usage_text(command.value, self.session.logged_in, self.session.is_admin)
        self.responses.send(text if text else UNKNOWN_COMMAND_MESSAGE)

    def _send_help_catalog(self) -> None:
        self.responses.send(render_help(self.session.is_admin), Tag.HELP)

    def _send_balance(self, balance: Optional[Decimal]) -> None:
        if balance is None:
            self.responses.send("", Tag.ACTION_NOT_ALLOWED)
            return
        amount = format_amount(balance)
        self.responses.send(amount, Tag.BALANCE)
        self.responses.send(f"Your balance: {amount}")

    def _send_amount(self, amount: Optional[Decimal]) -> None:
        if amount is None:
            self.responses.send("", Tag.ACTION_NOT_ALLOWED)
        else:
            self.responses.send(format_amount(amount))

    def _send_logged_out_if_dropped(self) -> None:
        # The session drops itself when its own record can no longer be read
        if not self.session.logged_in:
            self.responses.send("", Tag.LOGOUT)

    def _help(self, args: Tuple[str, ...]) -> None:
        if len(args) == 1:
            text = usage_text(args[0], self.session.logged_in, self.session.is_admin)
            self.responses.send(text if text else UNKNOWN_COMMAND_MESSAGE)
        else:
            self._send_help_catalog()

    def _login(self, args: Tuple[str, ...]) -> None:
        if len(args) != 2:
            self._usage(Command.LOGIN)
            return

        result = self.session.authenticate(args[0], args[1])
        if result is LoginResult.REJECTED:
            self.responses.send(LoginResult.REJECTED.value, Tag.LOGIN)
            self.responses.send(LoginResult.REJECTED.value, Tag.USERNAME)
            self.responses.send(LOGIN_FAILED_MESSAGE)
            return

        self.responses.send(result.value, Tag.LOGIN)
        self.responses.send(self.session.username, Tag.USERNAME)
        self._send_balance(self.session.balance)
        self._send_help_catalog()

    def _balance(self, args: Tuple[str, ...]) -> None:
        if not self.session.logged_in or args:
            self._usage(Command.BALANCE)
            return

        balance = self.session.refresh_balance()
        self._send_logged_out_if_dropped()
        self._send_balance(balance)

    def _withdraw(self, args: Tuple[str, ...]) -> None:
        if not self.session.logged_in or len(args) != 1:
            self._usage(Command.WITHDRAW)
            return

        balance = self.session.withdraw(args[0])
        self._send_logged_out_if_dropped()
        self._send_balance(balance)

    def _logout(self, args: Tuple[str, ...]) -> None:
        if not self.session.logged_in or args:
            self._usage(Command.LOGOUT)
            return

        self.session.logout()
        self.responses.send("", Tag.LOGOUT)
        self.responses.send(LOGOUT_MESSAGE)

    def _change_balance(self, args: Tuple[str, ...]) -> None:
        if not self.session.is_admin or len(args) != 2:
            self._usage(Command.CHANGE_BALANCE)
            return
        self._send_amount(self.session.change_balance_of(args[0], args[1]))

    def _check_balance(self, args: Tuple[str, ...]) -> None:
        if not self.session.is_admin or len(args) != 1:
            self._usage(Command.CHECK_BALANCE)
            return
        self._send_amount(self.session.check_balance_of(args[0]))

    def _create_user(self, args: Tuple[str, ...]) -> None:
        if not self.session.is_admin or len(args) != 2:
            self._usage(Command.CREATE_USER)
            return
        created = self.session.create_account(args[0], args[1])
        self.responses.send("Success" if created else "Failed")

    def _quit(self, args: Tuple[str, ...]) -> None:
        self.active = False
