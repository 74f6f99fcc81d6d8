"""A TLS front end that forwards SSH, HTTP CONNECT, WebSocket or payload-prefixed streams to an SSH server."""

from __future__ import annotations

import base64
import hashlib
import logging
import socket
import ssl
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

from slipgate.socks5 import _split_listen_addr

log = logging.getLogger(__name__)

WS_MAGIC = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OPCODE_CONTINUATION = 0x0
OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

SSH_BANNER = b"SSH-"
MAX_PAYLOAD_SCAN = 8192
HANDSHAKE_TIMEOUT = 30.0
DIAL_TIMEOUT = 10.0

_CHUNK = 32768
_ACCEPT_POLL = 0.5


class _Readable(Protocol):
    def read(self, size: int = -1) -> bytes: ...


class _LineReadable(Protocol):
    def readline(self) -> bytes: ...


@dataclass
class HttpRequest:
    """A parsed HTTP request head; header names are lower case."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)


class _BufferedSocket:
    """A socket reader that supports peeking and pushing bytes back."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._buf = bytearray()

    def _fill(self) -> bool:
        data = self._sock.recv(_CHUNK)
        if not data:
            return False
        self._buf += data
        return True

    def peek(self, size: int) -> bytes:
        while len(self._buf) < size:
            if not self._fill():
                raise EOFError("connection closed")
        return bytes(self._buf[:size])

    def unread(self, data: bytes) -> None:
        self._buf[:0] = data

    def read(self, size: int = _CHUNK) -> bytes:
        if self._buf:
            data = bytes(self._buf[:size])
            del self._buf[:size]
            return data
        return self._sock.recv(size)

    def readline(self) -> bytes:
        while True:
            index = self._buf.find(b"\n")
            if index >= 0:
                line = bytes(self._buf[: index + 1])
                del self._buf[: index + 1]
                return line
            if not self._fill():
                line = bytes(self._buf)
                self._buf.clear()
                return line


def _read_exact(reader: _Readable, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = reader.read(min(remaining, _CHUNK))
        if not chunk:
            raise EOFError("unexpected end of stream")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def compute_accept_key(key: str) -> str:
    """Return the Sec-WebSocket-Accept value for a Sec-WebSocket-Key."""
    digest = hashlib.sha1((key + WS_MAGIC).encode("latin-1")).digest()
    return base64.b64encode(digest).decode("ascii")


def _read_text_line(reader: _LineReadable) -> str:
    line = reader.readline()
    if not line.endswith(b"\n"):
        raise EOFError("unexpected end of HTTP request")
    return line.decode("latin-1")


def read_http_request(reader: _LineReadable) -> HttpRequest:
    """Read a request line and headers up to the blank line."""
    parts = _read_text_line(reader).strip().split(" ", 2)
    if len(parts) < 2:
        raise ValueError("bad request line")
    request = HttpRequest(method=parts[0], path=parts[1])
    while True:
        line = _read_text_line(reader).strip()
        if not line:
            return request
        name, sep, value = line.partition(":")
        if not sep:
            continue
        request.headers[name.strip().lower()] = value.strip()


def read_ws_frame(reader: _Readable) -> tuple[int, bytes]:
    """Read one WebSocket frame, unmasking it if needed; return (opcode, payload)."""
    first, second = _read_exact(reader, 2)
    opcode = first & 0x0F
    masked = bool(second & 0x80)
    length = second & 0x7F
    if length == 126:
        length = int.from_bytes(_read_exact(reader, 2), "big")
    elif length == 127:
        length = int.from_bytes(_read_exact(reader, 8), "big")
    mask = _read_exact(reader, 4) if masked else b""
    payload = _read_exact(reader, length)
    if masked:
        payload = bytes(byte ^ mask[i % 4] for i, byte in enumerate(payload))
    return opcode, payload


def encode_ws_frame(opcode: int, payload: bytes) -> bytes:
    """Encode an unmasked, final WebSocket frame."""
    length = len(payload)
    head = 0x80 | opcode
    if length <= 125:
        header = bytes([head, length])
    elif length <= 0xFFFF:
        header = bytes([head, 126]) + length.to_bytes(2, "big")
    else:
        header = bytes([head, 127]) + length.to_bytes(8, "big")
    return header + payload


def _ws_close_frame() -> bytes:
    return encode_ws_frame(OPCODE_CLOSE, (1000).to_bytes(2, "big"))


def _half_close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError:
        pass


def _relay(reader: _BufferedSocket, conn: socket.socket, remote: socket.socket) -> None:
    """Copy client and backend streams both ways until both directions end."""

    def upstream() -> None:
        try:
            while True:
                data = reader.read(_CHUNK)
                if not data:
                    break
                remote.sendall(data)
        except OSError:
            pass
        _half_close(remote)

    thread = threading.Thread(target=upstream, daemon=True)
    thread.start()
    try:
        while True:
            data = remote.recv(_CHUNK)
            if not data:
                break
            conn.sendall(data)
    except OSError:
        pass
    thread.join()


def _ws_to_tcp(reader: _BufferedSocket, remote: socket.socket) -> None:
    while True:
        try:
            opcode, payload = read_ws_frame(reader)
        except (EOFError, OSError):
            return
        try:
            if opcode in (OPCODE_TEXT, OPCODE_BINARY, OPCODE_CONTINUATION):
                remote.sendall(payload)
            elif opcode == OPCODE_CLOSE:
                return
            elif opcode == OPCODE_PING:
                remote.sendall(encode_ws_frame(OPCODE_PONG, payload))
        except OSError:
            return


def _tcp_to_ws(remote: socket.socket, conn: socket.socket) -> None:
    while True:
        try:
            data = remote.recv(_CHUNK)
        except OSError:
            data = b""
        if not data:
            try:
                conn.sendall(_ws_close_frame())
            except OSError:
                pass
            return
        try:
            conn.sendall(encode_ws_frame(OPCODE_BINARY, data))
        except OSError:
            return


def _find_ssh_banner(reader: _BufferedSocket) -> int | None:
    """Consume bytes up to and including ``SSH-``; return how many preceded it."""
    matched = 0
    for scanned in range(1, MAX_PAYLOAD_SCAN + 1):
        (byte,) = _read_exact(reader, 1)
        if byte == SSH_BANNER[matched]:
            matched += 1
            if matched == len(SSH_BANNER):
                return scanned - len(SSH_BANNER)
        elif matched > 0:
            matched = 1 if byte == SSH_BANNER[0] else 0
    return None


class StunTLSServer:
    """Accepts TLS connections and forwards them to an SSH server.

    The client protocol is chosen from the first four bytes: ``GET `` starts a
    WebSocket tunnel, ``CONN`` an HTTP CONNECT tunnel, ``SSH-`` a raw relay,
    and anything else is treated as a payload preceding an SSH banner.
    """

    def __init__(self, listen_addr: str, ssh_addr: str, cert_file: str, key_file: str) -> None:
        self.listen_addr = listen_addr
        self.ssh_addr = ssh_addr
        self.cert_file = cert_file
        self.key_file = key_file
        self._listener: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._stopping = threading.Event()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound (host, port) once listening, otherwise None."""
        return self._address

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        try:
            context.load_cert_chain(self.cert_file, self.key_file)
        except OSError as exc:
            raise OSError(f"load TLS cert: {exc}") from exc
        return context

    def serve_forever(self) -> None:
        """Listen for TLS clients until shutdown() is called."""
        context = self._tls_context()
        host, port = _split_listen_addr(self.listen_addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        listener = socket.socket(family, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, port))
            listener.listen()
        except OSError as exc:
            listener.close()
            raise OSError(f"listen: {exc}") from exc
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._address = listener.getsockname()[:2]
        log.info("StunTLS proxy listening on %s -> %s", self.listen_addr, self.ssh_addr)

        try:
            while not self._stopping.is_set():
                try:
                    raw, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._stopping.is_set():
                        return
                    log.warning("accept: %s", exc)
                    continue
                threading.Thread(
                    target=self._handle_tls, args=(raw, context), daemon=True
                ).start()
        finally:
            listener.close()

    def shutdown(self) -> None:
        """Stop accepting connections."""
        self._stopping.set()
        listener = self._listener
        if listener is not None:
            try:
                listener.close()
            except OSError:
                pass

    def _handle_tls(self, raw: socket.socket, context: ssl.SSLContext) -> None:
        raw.settimeout(HANDSHAKE_TIMEOUT)
        try:
            conn = context.wrap_socket(raw, server_side=True)
        except (OSError, ssl.SSLError):
            raw.close()
            return
        self.handle_connection(conn)

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one client connection to completion, then close it."""
        with conn:
            try:
                self._dispatch(conn)
            except (OSError, EOFError, ValueError):
                pass

    def _dial(self) -> socket.socket:
        host, port = _split_listen_addr(self.ssh_addr)
        remote = socket.create_connection((host, port), timeout=DIAL_TIMEOUT)
        remote.settimeout(None)
        return remote

    def _dispatch(self, conn: socket.socket) -> None:
        conn.settimeout(HANDSHAKE_TIMEOUT)
        reader = _BufferedSocket(conn)
        prefix = reader.peek(4)
        conn.settimeout(None)

        if prefix == b"GET ":
            self._handle_websocket(reader, conn)
        elif prefix == b"CONN":
            self._handle_http_connect(reader, conn)
        elif prefix == SSH_BANNER:
            self._handle_raw(reader, conn)
        else:
            self._handle_payload(reader, conn)

    def _handle_raw(self, reader: _BufferedSocket, conn: socket.socket) -> None:
        try:
            remote = self._dial()
        except OSError as exc:
            log.warning("raw: dial SSH: %s", exc)
            return
        with remote:
            _relay(reader, conn, remote)

    def _handle_http_connect(self, reader: _BufferedSocket, conn: socket.socket) -> None:
        try:
            request = read_http_request(reader)
        except (EOFError, ValueError, OSError) as exc:
            log.warning("connect: read request: %s", exc)
            return
        if request.method != "CONNECT":
            conn.sendall(b"HTTP/1.1 405 Method Not Allowed\r\n\r\n")
            return

        log.info("connect: CONNECT %s", request.path)
        try:
            remote = self._dial()
        except OSError as exc:
            log.warning("connect: dial SSH: %s", exc)
            conn.sendall(b"HTTP/1.1 502 Bad Gateway\r\n\r\n")
            return
        with remote:
            conn.sendall(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            _relay(reader, conn, remote)

    def _handle_payload(self, reader: _BufferedSocket, conn: socket.socket) -> None:
        skipped = _find_ssh_banner(reader)
        if skipped is None:
            log.warning("payload: no SSH banner found within %d bytes, dropping", MAX_PAYLOAD_SCAN)
            return
        reader.unread(SSH_BANNER)
        try:
            remote = self._dial()
        except OSError as exc:
            log.warning("payload: dial SSH: %s", exc)
            return
        with remote:
            log.info("payload: found SSH banner after %d bytes of payload", skipped)
            _relay(reader, conn, remote)

    def _handle_websocket(self, reader: _BufferedSocket, conn: socket.socket) -> None:
        try:
            request = read_http_request(reader)
        except (EOFError, ValueError, OSError) as exc:
            log.warning("ws: read request: %s", exc)
            return
        if request.headers.get("upgrade", "").casefold() != "websocket":
            conn.sendall(b"HTTP/1.1 400 Bad Request\r\n\r\n")
            return

        accept = compute_accept_key(request.headers.get("sec-websocket-key", ""))
        conn.sendall(
            (
                "HTTP/1.1 101 Switching Protocols\r\n"
                "Upgrade: websocket\r\n"
                "Connection: Upgrade\r\n"
                f"Sec-WebSocket-Accept: {accept}\r\n"
                "\r\n"
            ).encode("latin-1")
        )

        try:
            remote = self._dial()
        except OSError as exc:
            log.warning("ws: dial SSH: %s", exc)
            conn.sendall(_ws_close_frame())
            return

        with remote:

            def upstream() -> None:
                _ws_to_tcp(reader, remote)
                _half_close(remote)

            thread = threading.Thread(target=upstream, daemon=True)
            thread.start()
            _tcp_to_ws(remote, conn)
            thread.join()


def serve_stuntls(addr: str, port: int, ssh_addr: str, cert_file: str, key_file: str) -> None:
    """Run the TLS SSH front end (blocking)."""
    StunTLSServer(f"{addr}:{port}", ssh_addr, cert_file, key_file).serve_forever()