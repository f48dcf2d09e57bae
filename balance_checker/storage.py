"""
Ledger Storage Module

Provides the abstract ledger store interface and implementations for
in-memory (testing) and plain files (persistence). One record per username:

    line 1: username
    line 2: password (cleartext)
    line 3: admin flag ("true" / "false")
    line 4+: one signed decimal delta per line

Balances are never stored as a single value, they are derived by replaying
the deltas. Records are append-only from the protocol's point of view.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union
from decimal import Decimal
from dataclasses import dataclass, field
from pathlib import Path
from contextlib import contextmanager
import threading

from .amounts import ZERO, format_amount, parse_amount
from .logging_config import get_logger, log_action
from .protocol import find_collisions


HEADER_LINES = 3

logger = get_logger("balance_checker.storage")


class StorageError(Exception):
    """Raised when a ledger record cannot be read or written"""
    pass


class AccountExistsError(StorageError):
    """Raised when creating a record for a username that already has one"""
    pass


class AccountNotFoundError(StorageError):
    """Raised when appending to a record that does not exist"""
    pass


@dataclass
class AccountRecord:
    """Persisted account: credentials, admin flag and the ledger entries"""
    username: str
    password: str
    is_admin: bool
    entries: List[Decimal] = field(default_factory=list)

    @property
    def balance(self) -> Decimal:
        """Balance derived by replaying every ledger entry"""
        return sum(self.entries, ZERO)


def is_valid_username(username: str) -> bool:
    """Check that a username can be used as a single record key"""
    if not username or username in (".", ".."):
        return False
    return not any(ch in username for ch in ("/", "\\", "\0", "\n", "\r"))


def render_record(username: str, password: str, is_admin: bool = False,
                  entries: Optional[List[Decimal]] = None) -> str:
    """Render a full record in the on-disk line format"""
    lines = [username, password, "true" if is_admin else "false"]
    lines.extend(format_amount(entry) for entry in (entries if entries is not None else [ZERO]))
    return "\n".join(lines) + "\n"


def parse_record(text: str, discard_torn_tail: bool = False) -> Optional[AccountRecord]:
    """
    Parse record text into an AccountRecord

    Returns None for a record with fewer than three header lines, with any
    ledger line that is not an in-range decimal amount, or whose entries
    overflow the decimal context when summed. A partially summed balance is
    never returned. With discard_torn_tail, an unparsable last line that is
    not newline terminated (an interrupted append) is dropped instead.
    """
    lines = text.split("\n")
    torn = not text.endswith("\n")
    if not torn:
        lines.pop()

    if len(lines) < HEADER_LINES:
        return None

    username, password, admin_flag = lines[:HEADER_LINES]
    entries: List[Decimal] = []
    ledger_lines = lines[HEADER_LINES:]

    for index, line in enumerate(ledger_lines):
        amount = parse_amount(line)
        if amount is None:
            if discard_torn_tail and torn and index == len(ledger_lines) - 1:
                logger.warning(f"Discarding torn ledger line for {username!r}")
                break
            return None
        entries.append(amount)

    try:
        sum(entries, ZERO)
    except ArithmeticError:
        logger.warning(f"Ledger for {username!r} cannot be summed")
        return None

    return AccountRecord(
        username=username,
        password=password,
        is_admin=admin_flag.strip().lower() == "true",
        entries=entries
    )


class LedgerStore(ABC):
    """Abstract interface for per-user ledger stores"""

    def __init__(self, lock_accounts: bool = False):
        self.lock_accounts = lock_accounts
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @abstractmethod
    def load(self, username: str) -> Optional[AccountRecord]:
        """Load and replay a record, None if missing or corrupt"""
        pass

    @abstractmethod
    def append(self, username: str, delta: Decimal) -> None:
        """Append one ledger entry to an existing record"""
        pass

    @abstractmethod
    def create(self, username: str, password: str) -> None:
        """Create a fresh non-admin record with a zero balance"""
        pass

    @abstractmethod
    def exists(self, username: str) -> bool:
        """Check if a record exists"""
        pass

    def _lock_for(self, username: str) -> threading.Lock:
        with self._registry_lock:
            if username not in self._locks:
                self._locks[username] = threading.Lock()
            return self._locks[username]

    @contextmanager
    def atomic(self, username: str):
        """
        Context manager for a read-check-append cycle on one record

        Only serializes callers inside this process, and only when
        lock_accounts is enabled. Otherwise concurrent sessions on the same
        username may interleave their reads and appends.
        """
        if not self.lock_accounts:
            yield
            return

        with self._lock_for(username):
            yield

    def _validate_new_account(self, username: str, password: str) -> None:
        if not is_valid_username(username):
            raise StorageError(f"Invalid username: {username!r}")
        # Usernames are echoed in responses and must not alter the framing
        if ":" in username or find_collisions(username):
            raise StorageError(f"Username contains reserved characters: {username!r}")
        if "\n" in password or "\r" in password:
            raise StorageError("Password must be a single line")


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store for testing, keeps the on-disk text format"""

    def __init__(self, lock_accounts: bool = False, discard_torn_tail: bool = False):
        super().__init__(lock_accounts)
        self.discard_torn_tail = discard_torn_tail
        self._records: Dict[str, str] = {}
        self._lock = threading.RLock()

    def load(self, username: str) -> Optional[AccountRecord]:
        """Load a record from memory"""
        with self._lock:
            text = self._records.get(username)
        if text is None:
            return None
        return parse_record(text, self.discard_torn_tail)

    def append(self, username: str, delta: Decimal) -> None:
        """Append an entry in memory"""
        with self._lock:
            if username not in self._records:
                raise AccountNotFoundError(f"No record for {username!r}")
            text = self._records[username]
            if text and not text.endswith("\n"):
                text += "\n"
            self._records[username] = text + format_amount(delta) + "\n"

    def create(self, username: str, password: str) -> None:
        """Create a record in memory"""
        self._validate_new_account(username, password)
        with self._lock:
            if username in self._records:
                raise AccountExistsError(f"Record already exists for {username!r}")
            self._records[username] = render_record(username, password)

    def exists(self, username: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return username in self._records

    def put_raw(self, username: str, text: str) -> None:
        """Replace the raw record text, as an out-of-band edit would"""
        with self._lock:
            self._records[username] = text

    def get_raw(self, username: str) -> Optional[str]:
        """Get the raw record text"""
        with self._lock:
            return self._records.get(username)


class FileLedgerStore(LedgerStore):
    """Ledger store keeping one UTF-8 text file per username"""

    def __init__(self, users_dir: Union[str, Path] = "users", suffix: str = ".txt",
                 lock_accounts: bool = False, discard_torn_tail: bool = False):
        super().__init__(lock_accounts)
        self.users_dir = Path(users_dir)
        self.suffix = suffix
        self.discard_torn_tail = discard_torn_tail

    def path_for(self, username: str) -> Path:
        """Path of the record file for a username"""
        return self.users_dir / f"{username}{self.suffix}"

    def load(self, username: str) -> Optional[AccountRecord]:
        """Read and replay a record file"""
        if not is_valid_username(username):
            return None

        path = self.path_for(username)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read ledger file {path}: {e}")
            return None

        record = parse_record(text, self.discard_torn_tail)
        if record is None:
            logger.warning(f"Ledger file {path} is corrupt")
        return record

    def append(self, username: str, delta: Decimal) -> None:
        """Append one line with the signed delta to the record file"""
        if not is_valid_username(username):
            raise AccountNotFoundError(f"Invalid username: {username!r}")

        path = self.path_for(username)
        if not path.is_file():
            raise AccountNotFoundError(f"No ledger file for {username!r}")

        line = format_amount(delta) + "\n"
        try:
            # Hand-edited files often lack the final newline
            if not self._ends_with_newline(path):
                line = "\n" + line
            with open(path, "a", encoding="utf-8") as output:
                output.write(line)
        except OSError as e:
            raise StorageError(f"Cannot append to ledger file {path}: {e}") from e

        log_action(
            logger, "debug", "Ledger entry appended",
            username=username, action="append", resource=str(path),
            extra={"delta": format_amount(delta)}
        )

    def create(self, username: str, password: str) -> None:
        """Create the record file, failing if it already exists"""
        self._validate_new_account(username, password)

        path = self.path_for(username)
        try:
            self.users_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "x", encoding="utf-8") as output:
                output.write(render_record(username, password))
        except FileExistsError as e:
            raise AccountExistsError(f"Ledger file already exists: {path}") from e
        except OSError as e:
            raise StorageError(f"Cannot create ledger file {path}: {e}") from e

        log_action(
            logger, "info", "Ledger file created",
            username=username, action="create", resource=str(path)
        )

    def exists(self, username: str) -> bool:
        """Check if a record file exists"""
        return is_valid_username(username) and self.path_for(username).is_file()

    @staticmethod
    def _ends_with_newline(path: Path) -> bool:
        with open(path, "rb") as existing:
            existing.seek(0, 2)
            if existing.tell() == 0:
                return True
            existing.seek(-1, 2)
            return existing.read(1) == b"\n"

