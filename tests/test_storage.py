"""
Tests for ledger stores

Covers the on-disk record format, balance replay, fail-safe loading of
corrupt records and the optional per-username lock.
"""

import threading
import pytest
from decimal import Decimal, localcontext

from balance_checker.storage import (
    AccountExistsError, AccountNotFoundError, AccountRecord, FileLedgerStore,
    InMemoryLedgerStore, StorageError, is_valid_username, parse_record, render_record
)


@pytest.fixture
def users_dir(tmp_path):
    """Directory holding the ledger files"""
    return tmp_path / "users"


@pytest.fixture
def store(users_dir):
    """File ledger store in a temporary directory"""
    return FileLedgerStore(users_dir)


def write_record(users_dir, username, text):
    """Write a raw record file, as an administrator editing it by hand would"""
    users_dir.mkdir(parents=True, exist_ok=True)
    path = users_dir / f"{username}.txt"
    path.write_text(text, encoding="utf-8")
    return path


class TestParseRecord:
    """Test parsing of record text"""

    def test_header_and_entries(self):
        """Test that balance is the sum of every line after the header"""
        record = parse_record("alice\nsecret\nfalse\n0.0\n20.0\n-5.0\n")

        assert record.username == "alice"
        assert record.password == "secret"
        assert record.is_admin is False
        assert record.entries == [Decimal("0.0"), Decimal("20.0"), Decimal("-5.0")]
        assert record.balance == Decimal("15.0")

    def test_admin_flag(self):
        """Test that the admin flag is read case-insensitively"""
        assert parse_record("root\npw\ntrue\n0.0\n").is_admin
        assert parse_record("root\npw\nTRUE\n0.0\n").is_admin
        assert not parse_record("root\npw\nyes\n0.0\n").is_admin

    def test_header_only_record_has_zero_balance(self):
        """Test a record without ledger lines"""
        record = parse_record("bob\npw\nfalse\n")
        assert record.entries == []
        assert str(record.balance) == "0.0"

    def test_short_record_is_rejected(self):
        """Test that fewer than three header lines means no record"""
        assert parse_record("") is None
        assert parse_record("alice\n") is None
        assert parse_record("alice\nsecret\n") is None

    def test_bad_entry_invalidates_whole_record(self):
        """Test that one bad line never yields a partial balance"""
        assert parse_record("alice\nsecret\nfalse\n0.0\nabc\n5.0\n") is None
        assert parse_record("alice\nsecret\nfalse\n0.0\n\n") is None
        assert parse_record("alice\nsecret\nfalse\nNaN\n") is None

    def test_torn_tail_fails_by_default(self):
        """Test that an interrupted append invalidates the record"""
        assert parse_record("alice\nsecret\nfalse\n0.0\n-") is None

    def test_torn_tail_can_be_discarded(self):
        """Test that an unterminated bad last line can be ignored"""
        record = parse_record("alice\nsecret\nfalse\n10.0\n-", discard_torn_tail=True)
        assert record.balance == Decimal("10.0")

    def test_terminated_bad_line_is_never_discarded(self):
        """Test that only an unterminated last line counts as torn"""
        assert parse_record("alice\nsecret\nfalse\n10.0\n-\n", discard_torn_tail=True) is None

    def test_unterminated_valid_last_line_is_kept(self):
        """Test that a missing final newline alone is not corruption"""
        record = parse_record("alice\nsecret\nfalse\n10.0\n2.5")
        assert record.balance == Decimal("12.5")

    def test_out_of_range_entry_invalidates_record(self):
        """Test that an oversized ledger line loads as not found instead of raising"""
        assert parse_record("alice\nsecret\nfalse\n0.0\n1e1000000\n") is None

    def test_overflowing_sum_invalidates_record(self):
        """Test that entries whose sum overflows load as not found"""
        with localcontext() as context:
            context.Emax = 28
            assert parse_record("alice\nsecret\nfalse\n9e28\n9e28\n") is None

    def test_render_record_round_trip(self):
        """Test that rendered records parse back"""
        text = render_record("carol", "pw")
        assert text == "carol\npw\nfalse\n0.0\n"
        assert parse_record(text) == AccountRecord("carol", "pw", False, [Decimal("0.0")])


class TestUsernameValidation:
    """Test which usernames can be storage keys"""

    def test_plain_names_are_valid(self):
        assert is_valid_username("alice")
        assert is_valid_username("Alice.Smith")

    def test_path_like_names_are_invalid(self):
        """Test that a username cannot escape the users directory"""
        for name in ("", ".", "..", "../alice", "a/b", "a\\b", "a\nb", "a\0b"):
            assert not is_valid_username(name)


class TestFileLedgerStore:
    """Test the file-backed ledger store"""

    def test_create_writes_four_line_record(self, store, users_dir):
        """Test that a new record has the header and a zero entry"""
        store.create("alice", "secret")

        path = users_dir / "alice.txt"
        assert path.read_text(encoding="utf-8") == "alice\nsecret\nfalse\n0.0\n"
        assert store.exists("alice")

    def test_create_makes_users_directory(self, store, users_dir):
        """Test that a missing users directory is created on demand"""
        assert not users_dir.exists()
        store.create("alice", "secret")
        assert users_dir.is_dir()

    def test_create_existing_fails(self, store, users_dir):
        """Test that an existing record is never overwritten"""
        store.create("alice", "secret")
        store.append("alice", Decimal("20"))

        with pytest.raises(AccountExistsError):
            store.create("alice", "other")

        assert store.load("alice").balance == Decimal("20.0")

    def test_create_rejects_invalid_username(self, store):
        """Test that unsafe usernames cannot be created"""
        with pytest.raises(StorageError):
            store.create("../evil", "pw")

    def test_create_rejects_framing_characters(self, store):
        """Test that usernames which would alter the response framing cannot be created"""
        for name in ("x:::login::admin", "a::b", "a:b", "snake_case"):
            with pytest.raises(StorageError):
                store.create(name, "pw")
            assert not store.exists(name)

    def test_load_missing_record(self, store):
        """Test that a missing file loads as not found"""
        assert store.load("nobody") is None
        assert not store.exists("nobody")

    def test_load_invalid_username(self, store):
        """Test that path-like usernames load as not found"""
        assert store.load("../alice") is None

    def test_load_corrupt_record(self, store, users_dir):
        """Test that a corrupt record file loads as not found"""
        write_record(users_dir, "alice", "alice\nsecret\nfalse\n0.0\nten\n")
        assert store.load("alice") is None

    def test_append_and_replay(self, store, users_dir):
        """Test that appended deltas are replayed into the balance"""
        store.create("alice", "secret")
        store.append("alice", Decimal("20"))
        store.append("alice", Decimal("-5"))

        assert store.load("alice").balance == Decimal("15.0")
        lines = (users_dir / "alice.txt").read_text(encoding="utf-8").splitlines()
        assert lines[3:] == ["0.0", "20.0", "-5.0"]

    def test_append_to_missing_record_fails(self, store):
        """Test that append never creates a record"""
        with pytest.raises(AccountNotFoundError):
            store.append("nobody", Decimal("1"))

    def test_append_after_unterminated_line(self, store, users_dir):
        """Test appending to a hand-edited file without a final newline"""
        write_record(users_dir, "root", "root\npw\ntrue\n100.0")
        store.append("root", Decimal("-1"))

        record = store.load("root")
        assert record.is_admin
        assert record.balance == Decimal("99.0")

    def test_load_is_idempotent(self, store):
        """Test that loading an unchanged record twice gives the same balance"""
        store.create("alice", "secret")
        store.append("alice", Decimal("12.34"))

        assert store.load("alice") == store.load("alice")

    def test_custom_suffix(self, users_dir):
        """Test a store without the .txt suffix"""
        store = FileLedgerStore(users_dir, suffix="")
        store.create("alice", "secret")
        assert (users_dir / "alice").is_file()


class TestInMemoryLedgerStore:
    """Test the in-memory ledger store"""

    def test_same_semantics_as_files(self):
        """Test create, append and load in memory"""
        store = InMemoryLedgerStore()
        store.create("alice", "secret")
        store.append("alice", Decimal("7.5"))

        assert store.get_raw("alice") == "alice\nsecret\nfalse\n0.0\n7.5\n"
        assert store.load("alice").balance == Decimal("7.5")

    def test_duplicate_create(self):
        store = InMemoryLedgerStore()
        store.create("alice", "secret")
        with pytest.raises(AccountExistsError):
            store.create("alice", "secret")

    def test_put_raw_simulates_out_of_band_edit(self):
        """Test promoting a user to admin by editing the record"""
        store = InMemoryLedgerStore()
        store.put_raw("root", "root\npw\ntrue\n0.0\n")
        assert store.load("root").is_admin

    def test_append_missing(self):
        store = InMemoryLedgerStore()
        with pytest.raises(AccountNotFoundError):
            store.append("nobody", Decimal("1"))


class TestAccountLocks:
    """Test the optional per-username lock"""

    def test_atomic_is_noop_when_disabled(self):
        """Test that nesting atomic blocks does not deadlock when locking is off"""
        store = InMemoryLedgerStore()
        with store.atomic("alice"):
            with store.atomic("alice"):
                pass

    def test_atomic_serializes_same_username(self):
        """Test that a second thread waits for the lock holder"""
        store = InMemoryLedgerStore(lock_accounts=True)
        entered = threading.Event()

        def contender():
            with store.atomic("alice"):
                entered.set()

        with store.atomic("alice"):
            worker = threading.Thread(target=contender)
            worker.start()
            assert not entered.wait(0.2)

        worker.join(timeout=5)
        assert entered.is_set()

    def test_atomic_does_not_block_other_usernames(self):
        """Test that locks are per username"""
        store = InMemoryLedgerStore(lock_accounts=True)
        entered = threading.Event()

        def other_user():
            with store.atomic("bob"):
                entered.set()

        with store.atomic("alice"):
            worker = threading.Thread(target=other_user)
            worker.start()
            assert entered.wait(5)

        worker.join(timeout=5)
