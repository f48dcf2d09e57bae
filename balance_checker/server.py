"""
Connection Acceptor Module

Listens on a TCP port and runs one SessionDispatcher per accepted connection
on its own thread. There is no connection limit and no per-request timeout:
a silent client keeps its thread until it disconnects.
"""

import argparse
import itertools
import socket
import sys
import threading
from typing import List, Optional, Tuple

from .accounts import AccountSession
from .config import get_config
from .dispatcher import SessionDispatcher
from .logging_config import get_logger, log_action, setup_logging
from .storage import FileLedgerStore, LedgerStore


ACCEPT_POLL_INTERVAL = 0.5  # seconds between shutdown checks while idle

logger = get_logger("balance_checker.server")


class ConnectionIdCounter:
    """Thread-safe source of connection ids, starting at 1"""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        """Get the id for the next connection"""
        with self._lock:
            return next(self._counter)


def serve_connection(conn: socket.socket, address: Tuple, connection_id: int,
                     store: LedgerStore, fold_case: bool = False) -> None:
    """
    Serve one client connection until it ends

    Owns the socket and the session state. Transport errors are logged and
    only end this connection.
    """
    session = AccountSession(store, connection_id)
    dispatcher = SessionDispatcher(session, connection_id, fold_case=fold_case)
    log_action(
        logger, "info", "Client connected",
        connection_id=connection_id, action="connect", extra={"peer": str(address)}
    )

    try:
        with conn, \
                conn.makefile("r", encoding="utf-8", errors="replace", newline="\n") as reader, \
                conn.makefile("w", encoding="utf-8", newline="\n") as writer:
            dispatcher.run(reader, writer)
    except OSError as e:
        log_action(
            logger, "error", f"Connection failed: {e}",
            connection_id=connection_id, action="io_error"
        )
    finally:
        log_action(
            logger, "info", "Socket closed",
            connection_id=connection_id, action="disconnect"
        )


class BalanceServer:
    """Sequential accept loop spawning one thread per connection"""

    def __init__(self, store: LedgerStore, host: str = "0.0.0.0", port: int = 6969,
                 fold_case: bool = False):
        self.store = store
        self.host = host
        self.port = port
        self.fold_case = fold_case
        self.connection_ids = ConnectionIdCounter()
        self._socket: Optional[socket.socket] = None
        self._shutdown = threading.Event()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port), useful when binding to port 0"""
        if self._socket is None:
            raise RuntimeError("Server socket is not bound")
        return self._socket.getsockname()[:2]

    def bind(self) -> Tuple[str, int]:
        """Open the listening socket"""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen()
            sock.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError:
            sock.close()
            raise
        self._socket = sock
        logger.info(f"Server started on port {self.address[1]}")
        return self.address

    def serve_forever(self) -> None:
        """Accept connections until shutdown() or the socket fails"""
        if self._socket is None:
            self.bind()

        try:
            while not self._shutdown.is_set():
                try:
                    conn, address = self._socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if not self._shutdown.is_set():
                        logger.error(f"Listening socket failed: {e}")
                    break
                self._spawn(conn, address)
        finally:
            self._close_socket()

    def shutdown(self) -> None:
        """Stop accepting connections, open connections keep running"""
        self._shutdown.set()

    def _spawn(self, conn: socket.socket, address: Tuple) -> None:
        connection_id = self.connection_ids.next_id()
        try:
            conn.settimeout(None)
            worker = threading.Thread(
                target=serve_connection,
                args=(conn, address, connection_id, self.store, self.fold_case),
                name=f"balance-connection-{connection_id}",
                daemon=True
            )
            worker.start()
        except (OSError, RuntimeError) as e:
            log_action(
                logger, "error", f"Cannot start connection handler: {e}",
                connection_id=connection_id, action="spawn"
            )
            conn.close()

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None


def build_parser() -> argparse.ArgumentParser:
    """Command line interface of the server"""
    parser = argparse.ArgumentParser(prog="balance-server", description="Balance checker server")
    parser.add_argument("port", nargs="?", type=int, default=None,
                        help="port to listen on (default from config, 6969)")
    parser.add_argument("--host", default=None, help="address to bind")
    parser.add_argument("--users-dir", default=None, help="directory with user ledger files")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--lock-accounts", action="store_true", default=None,
                        help="serialize balance changes per username")
    return parser


def run_server(host: str = "0.0.0.0", port: int = 6969, store: Optional[LedgerStore] = None,
               fold_case: bool = False) -> int:
    """Run the server in the foreground, returns a process exit code"""
    server = BalanceServer(store or FileLedgerStore(), host=host, port=port, fold_case=fold_case)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Unable to open socket for listening: {e}")
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Server entry point"""
    args = build_parser().parse_args(argv)
    config = get_config()

    setup_logging(args.log_level or config.log_level, log_format=config.log_format,
                  log_file=config.log_file)

    store = FileLedgerStore(
        users_dir=args.users_dir or config.users_dir,
        suffix=config.user_file_suffix,
        lock_accounts=args.lock_accounts if args.lock_accounts is not None else config.lock_accounts,
        discard_torn_tail=config.discard_torn_tail
    )
    return run_server(
        host=args.host or config.server_host,
        port=args.port if args.port is not None else config.server_port,
        store=store,
        fold_case=config.fold_request_case
    )


if __name__ == "__main__":
    sys.exit(main())
