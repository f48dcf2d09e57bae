"""
Test suite for the connection acceptor

Runs a real server on a loopback port and talks to it over TCP.
"""

import socket
import threading
import pytest
from decimal import Decimal

from balance_checker.protocol import decode_batch
from balance_checker.server import BalanceServer, ConnectionIdCounter, build_parser, run_server
from balance_checker.storage import FileLedgerStore, InMemoryLedgerStore


@pytest.fixture
def store():
    store = InMemoryLedgerStore()
    store.put_raw("alice", "alice\nsecret\nfalse\n0.0\n")
    store.put_raw("root", "root\ntoor\ntrue\n0.0\n")
    return store


@pytest.fixture
def server(store):
    """Server bound to a free loopback port and accepting in the background"""
    server = BalanceServer(store, host="127.0.0.1", port=0)
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(timeout=5)


class Client:
    """Minimal line client for driving the server"""

    def __init__(self, address):
        self.sock = socket.create_connection(address, timeout=5)
        self.reader = self.sock.makefile("r", encoding="utf-8", newline="\n")
        self.greeting = self.reader.readline()

    def request(self, line):
        self.sock.sendall((line + "\n").encode("utf-8"))
        return [(item.tag, item.payload) for item in decode_batch(self.reader.readline())]

    def close(self):
        self.reader.close()
        self.sock.close()


class TestConnectionIdCounter:
    """Test connection id allocation"""

    def test_ids_start_at_one(self):
        counter = ConnectionIdCounter()
        assert [counter.next_id() for _ in range(3)] == [1, 2, 3]

    def test_ids_unique_across_threads(self):
        counter = ConnectionIdCounter()
        ids = []
        lock = threading.Lock()

        def take():
            for _ in range(100):
                value = counter.next_id()
                with lock:
                    ids.append(value)

        workers = [threading.Thread(target=take) for _ in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert sorted(ids) == list(range(1, 401))


class TestBalanceServer:
    """Test serving clients over TCP"""

    def test_address_requires_bind(self, store):
        with pytest.raises(RuntimeError):
            BalanceServer(store).address

    def test_greeting_is_help(self, server):
        client = Client(server.address)
        try:
            assert decode_batch(client.greeting)[0].tag == "help"
        finally:
            client.close()

    def test_end_to_end_scenario(self, server, store):
        """Test create, rejected withdrawal, admin top up and withdrawal"""
        admin = Client(server.address)
        user = Client(server.address)
        try:
            assert admin.request("login root toor")[0] == ("login", "admin")
            assert admin.request("createuser bob pw") == [("text", "Success")]

            assert user.request("login bob pw")[:3] == [
                ("login", "user"), ("username", "bob"), ("balance", "0.0")
            ]
            assert user.request("withdraw 5") == [("actionnotallowed", "actionnotallowed")]

            assert admin.request("changebalance bob 20") == [("text", "20.0")]
            assert user.request("withdraw 5")[0] == ("balance", "15.0")
        finally:
            admin.close()
            user.close()

        assert store.load("bob").balance == Decimal("15.0")

    def test_quit_closes_connection(self, server):
        client = Client(server.address)
        try:
            client.sock.sendall(b"quit\n")
            assert client.reader.readline() == ""
        finally:
            client.close()

    def test_sessions_are_independent(self, server):
        """Test that logging in on one connection does not affect another"""
        first = Client(server.address)
        second = Client(server.address)
        try:
            first.request("login alice secret")
            assert second.request("balance") == [
                ("text", "Unknown command, type help to list all available commands.")
            ]
        finally:
            first.close()
            second.close()

    def test_connection_ids_increase(self, server):
        clients = [Client(server.address) for _ in range(3)]
        try:
            assert server.connection_ids.next_id() == 4
        finally:
            for client in clients:
                client.close()

    def test_abrupt_disconnect_keeps_server_running(self, server):
        raw = socket.create_connection(server.address, timeout=5)
        raw.close()

        client = Client(server.address)
        try:
            assert client.request("help")[0][0] == "help"
        finally:
            client.close()

    def test_file_store_over_tcp(self, tmp_path):
        store = FileLedgerStore(tmp_path / "users")
        store.create("carol", "pw")
        store.append("carol", Decimal("3"))

        server = BalanceServer(store, host="127.0.0.1", port=0)
        server.bind()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        client = Client(server.address)
        try:
            assert client.request("login carol pw")[2] == ("balance", "3.0")
        finally:
            client.close()
            server.shutdown()
            thread.join(timeout=5)


class TestRunServer:
    """Test the foreground runner and its command line"""

    def test_bind_failure_returns_error_code(self, store):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        try:
            port = blocker.getsockname()[1]
            assert run_server(host="127.0.0.1", port=port, store=store) == 1
        finally:
            blocker.close()

    def test_parser_defaults(self):
        args = build_parser().parse_args([])
        assert args.port is None
        assert args.host is None
        assert args.lock_accounts is None

    def test_parser_values(self):
        args = build_parser().parse_args(["7000", "--host", "127.0.0.1", "--lock-accounts"])
        assert args.port == 7000
        assert args.host == "127.0.0.1"
        assert args.lock_accounts is True
