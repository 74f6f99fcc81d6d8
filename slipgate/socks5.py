"""A small SOCKS5 proxy supporting CONNECT with optional username/password auth."""

from __future__ import annotations

import logging
import signal
import socket
import threading
from typing import Mapping

log = logging.getLogger(__name__)

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01

METHOD_NO_AUTH = 0x00
METHOD_USER_PASS = 0x02

CMD_CONNECT = 0x01

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REPLY_SUCCEEDED = 0x00
REPLY_CONNECTION_REFUSED = 0x05
REPLY_COMMAND_NOT_SUPPORTED = 0x07
REPLY_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

AUTH_SUCCESS = bytes([AUTH_VERSION, 0x00])
AUTH_FAILURE = bytes([AUTH_VERSION, 0x01])

DIAL_TIMEOUT = 30.0
_RELAY_CHUNK = 32768
_ACCEPT_POLL = 0.5


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise ConnectionError at end of stream."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = conn.recv(remaining)
        if not chunk:
            raise ConnectionError("connection closed")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="surrogateescape")


def _split_listen_addr(listen_addr: str) -> tuple[str, int]:
    host, sep, port = listen_addr.rpartition(":")
    if not sep:
        raise ValueError(f"listen address {listen_addr!r} has no port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _pipe(src: socket.socket, dst: socket.socket) -> None:
    """Copy src to dst until EOF or error, then half-close dst."""
    try:
        while True:
            data = src.recv(_RELAY_CHUNK)
            if not data:
                break
            dst.sendall(data)
    except OSError:
        pass
    try:
        dst.shutdown(socket.SHUT_WR)
    except OSError:
        pass


class Socks5Server:
    """SOCKS5 proxy server whose credentials can be swapped at runtime.

    An empty credential mapping disables authentication.
    """

    def __init__(self, listen_addr: str, credentials: Mapping[str, str] | None = None) -> None:
        self.listen_addr = listen_addr
        self._creds_lock = threading.Lock()
        self._credentials: dict[str, str] = dict(credentials or {})
        self._listener: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._stopping = threading.Event()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound (host, port) once listening, otherwise None."""
        return self._address

    def set_credentials(self, credentials: Mapping[str, str] | None) -> None:
        """Replace the credential set; live connections are unaffected."""
        with self._creds_lock:
            self._credentials = dict(credentials or {})

    def _has_auth(self) -> bool:
        with self._creds_lock:
            return bool(self._credentials)

    def check_credential(self, user: str, password: str) -> bool:
        """Return True if the pair is in the current credential set."""
        with self._creds_lock:
            return user in self._credentials and self._credentials[user] == password

    def serve_forever(self) -> None:
        """Listen and serve connections until shutdown() or SIGTERM/SIGINT."""
        host, port = _split_listen_addr(self.listen_addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        listener = socket.socket(family, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, port))
            listener.listen()
        except OSError:
            listener.close()
            raise
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._address = listener.getsockname()[:2]
        log.info("SOCKS5 proxy listening on %s", self.listen_addr)

        previous = self._install_signal_handlers()
        try:
            while not self._stopping.is_set():
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._stopping.is_set():
                        return
                    log.warning("accept: %s", exc)
                    continue
                conn.settimeout(None)
                threading.Thread(
                    target=self.handle_connection, args=(conn,), daemon=True
                ).start()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            listener.close()

    def _install_signal_handlers(self) -> dict[int, object]:
        previous: dict[int, object] = {}
        if threading.current_thread() is not threading.main_thread():
            return previous

        def _on_signal(signum: int, frame: object) -> None:
            log.info("shutting down SOCKS5 proxy")
            self.shutdown()

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                previous[signum] = signal.signal(signum, _on_signal)
            except (ValueError, OSError):
                pass
        return previous

    def shutdown(self) -> None:
        """Stop accepting connections."""
        self._stopping.set()
        listener = self._listener
        if listener is not None:
            try:
                listener.close()
            except OSError:
                pass

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one client connection to completion, then close it."""
        with conn:
            try:
                self._serve_client(conn)
            except (OSError, ConnectionError):
                pass

    def _serve_client(self, conn: socket.socket) -> None:
        version, n_methods = _recv_exact(conn, 2)
        if version != SOCKS_VERSION:
            return
        _recv_exact(conn, n_methods)

        if self._has_auth():
            conn.sendall(bytes([SOCKS_VERSION, METHOD_USER_PASS]))
            if not self._authenticate(conn):
                return
        else:
            conn.sendall(bytes([SOCKS_VERSION, METHOD_NO_AUTH]))

        version, cmd, reserved, atyp = _recv_exact(conn, 4)
        if version != SOCKS_VERSION or reserved != 0x00:
            return
        if cmd != CMD_CONNECT:
            self._send_reply(conn, REPLY_COMMAND_NOT_SUPPORTED)
            return

        if atyp == ATYP_IPV4:
            host = socket.inet_ntop(socket.AF_INET, _recv_exact(conn, 4))
        elif atyp == ATYP_DOMAIN:
            (length,) = _recv_exact(conn, 1)
            host = _decode(_recv_exact(conn, length))
        elif atyp == ATYP_IPV6:
            host = socket.inet_ntop(socket.AF_INET6, _recv_exact(conn, 16))
        else:
            self._send_reply(conn, REPLY_ADDRESS_TYPE_NOT_SUPPORTED)
            return

        port = int.from_bytes(_recv_exact(conn, 2), "big")

        try:
            remote = socket.create_connection((host, port), timeout=DIAL_TIMEOUT)
        except OSError:
            self._send_reply(conn, REPLY_CONNECTION_REFUSED)
            return

        with remote:
            remote.settimeout(None)
            self._send_reply(conn, REPLY_SUCCEEDED, remote.getsockname())
            upstream = threading.Thread(target=_pipe, args=(conn, remote), daemon=True)
            upstream.start()
            _pipe(remote, conn)
            upstream.join()

    def _authenticate(self, conn: socket.socket) -> bool:
        version, user_len = _recv_exact(conn, 2)
        if version != AUTH_VERSION:
            conn.sendall(AUTH_FAILURE)
            return False
        user = _decode(_recv_exact(conn, user_len))
        (pass_len,) = _recv_exact(conn, 1)
        secret = _decode(_recv_exact(conn, pass_len))

        if self.check_credential(user, secret):
            conn.sendall(AUTH_SUCCESS)
            return True
        conn.sendall(AUTH_FAILURE)
        return False

    @staticmethod
    def _send_reply(conn: socket.socket, status: int, bound: tuple | None = None) -> None:
        address = bytes(4)
        port = 0
        if bound is not None:
            try:
                address = socket.inet_pton(socket.AF_INET, bound[0])
            except (OSError, TypeError):
                address = bytes(4)
            port = bound[1]
        conn.sendall(
            bytes([SOCKS_VERSION, status, 0x00, ATYP_IPV4])
            + address
            + port.to_bytes(2, "big")
        )


def serve(addr: str, port: int, user: str = "", password: str = "") -> None:
    """Run a SOCKS5 proxy with at most one credential pair (blocking)."""
    credentials = {user: password} if user else {}
    Socks5Server(f"{addr}:{port}", credentials).serve_forever()


def serve_multi(addr: str, port: int, credentials: Mapping[str, str] | None) -> None:
    """Run a SOCKS5 proxy with several credential pairs (blocking)."""
    Socks5Server(f"{addr}:{port}", credentials).serve_forever()