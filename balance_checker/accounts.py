"""
Account Session Module

In-memory state of one connected client: identity, role and cached balance.
Wraps ledger store calls with the balance rules:

- regular withdrawals may only remove money, never more than the balance
- privileged ("god mode") changes may add or remove any amount on another
  user's record
- balances reported after a change are always re-read from the store
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from .amounts import ZERO, format_amount, parse_amount
from .logging_config import get_logger, log_action
from .storage import AccountRecord, LedgerStore, StorageError


class LoginResult(Enum):
    """Outcome of an authentication attempt"""
    ADMIN = "admin"
    USER = "user"
    REJECTED = "null"


class AccountSession:
    """
    Session of one client connection

    Anonymous -> Authenticated(USER | ADMIN) -> Anonymous. A session never
    shares state with another connection; two sessions logged in as the same
    user only share the underlying ledger record.
    """

    def __init__(self, store: LedgerStore, connection_id: int = 0):
        self.store = store
        self.connection_id = connection_id
        self.logger = get_logger("balance_checker.accounts")
        self.logout()

    @property
    def logged_in(self) -> bool:
        """Check if the session is authenticated"""
        return self._logged_in

    @property
    def is_admin(self) -> bool:
        """Check if the session is authenticated as an administrator"""
        return self._logged_in and self._is_admin

    @property
    def username(self) -> str:
        """Username of the session, empty when anonymous"""
        return self._username

    @property
    def balance(self) -> Optional[Decimal]:
        """Cached balance, None when unknown"""
        return self._balance if self._logged_in else None

    @property
    def role(self) -> LoginResult:
        """Current role, REJECTED when anonymous"""
        if not self._logged_in:
            return LoginResult.REJECTED
        return LoginResult.ADMIN if self._is_admin else LoginResult.USER

    def logout(self) -> None:
        """Reset every field to the anonymous defaults"""
        self._logged_in = False
        self._is_admin = False
        self._username = ""
        self._balance = None

    def authenticate(self, username: str, password: str) -> LoginResult:
        """
        Log in with a username/password pair

        Already authenticated sessions keep their identity and get their
        current role back without touching the store.
        """
        if self._logged_in:
            return self.role

        record = self.store.load(username)
        if record is None or record.username != username or record.password != password:
            self.logout()
            log_action(
                self.logger, "info", "Login rejected",
                connection_id=self.connection_id, username=username, action="login"
            )
            return LoginResult.REJECTED

        self._apply_record(record)
        log_action(
            self.logger, "info", "Login succeeded",
            connection_id=self.connection_id, username=username, action="login",
            extra={"role": self.role.value}
        )
        return self.role

    def refresh_balance(self) -> Optional[Decimal]:
        """
        Re-read the own balance from the store

        A record that vanished or became corrupt logs the session out.
        """
        if not self._logged_in:
            return None

        record = self.store.load(self._username)
        if record is None:
            self.logger.warning(f"Cannot reload ledger for {self._username!r}, logging out")
            self.logout()
            return None

        self._balance = record.balance
        return self._balance

    def withdraw(self, amount_text: str) -> Optional[Decimal]:
        """
        Withdraw money from the own account

        Succeeds iff 0 < amount <= balance. Returns the new balance re-read
        from the store, or None if the withdrawal was rejected.
        """
        if not self._logged_in:
            return None

        amount = parse_amount(amount_text)
        if amount is None:
            return None

        delta = -amount
        with self.store.atomic(self._username):
            balance = self.refresh_balance()
            if balance is None:
                return None

            if delta >= ZERO or balance < amount:
                log_action(
                    self.logger, "info", "Withdrawal rejected",
                    connection_id=self.connection_id, username=self._username,
                    action="withdraw",
                    extra={"amount": format_amount(amount), "balance": format_amount(balance)}
                )
                return None

            if not self._append(self._username, delta):
                return None
            new_balance = self.refresh_balance()

        log_action(
            self.logger, "info", "Withdrawal applied",
            connection_id=self.connection_id, username=self._username, action="withdraw",
            extra={"amount": format_amount(amount)}
        )
        return new_balance

    def change_balance_of(self, username: str, amount_text: str) -> Optional[Decimal]:
        """
        Change another user's balance by any signed amount

        Returns the target's new balance or None on a bad amount, a missing
        target or a write failure.
        """
        amount = parse_amount(amount_text)
        if amount is None:
            return None

        with self.store.atomic(username):
            if self.store.load(username) is None:
                return None
            if not self._append(username, amount):
                return None
            record = self.store.load(username)

        if record is None:
            return None

        log_action(
            self.logger, "info", "Balance changed by administrator",
            connection_id=self.connection_id, username=self._username,
            action="change_balance", resource=f"account:{username}",
            extra={"amount": format_amount(amount)}
        )
        if self._logged_in and username == self._username:
            self._balance = record.balance
        return record.balance

    def check_balance_of(self, username: str) -> Optional[Decimal]:
        """Look up another user's balance, None if unavailable"""
        record = self.store.load(username)
        if record is None:
            return None
        return record.balance

    def create_account(self, username: str, password: str) -> bool:
        """Create a new regular user with a zero balance"""
        try:
            self.store.create(username, password)
        except StorageError as e:
            log_action(
                self.logger, "warning", f"Account creation failed: {e}",
                connection_id=self.connection_id, username=self._username,
                action="create_user", resource=f"account:{username}"
            )
            return False

        log_action(
            self.logger, "info", "Account created",
            connection_id=self.connection_id, username=self._username,
            action="create_user", resource=f"account:{username}"
        )
        return True

    def _apply_record(self, record: AccountRecord) -> None:
        self._logged_in = True
        self._is_admin = record.is_admin
        self._username = record.username
        self._balance = record.balance

    def _append(self, username: str, delta: Decimal) -> bool:
        try:
            self.store.append(username, delta)
        except StorageError as e:
            self.logger.error(f"Ledger append failed for {username!r}: {e}")
            return False
        return True
