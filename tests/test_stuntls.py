import io
import socket
import threading

import pytest

from slipgate.stuntls import (
    HttpRequest,
    StunTLSServer,
    compute_accept_key,
    encode_ws_frame,
    read_http_request,
    read_ws_frame,
)


@pytest.fixture
def echo_backend():
    """A TCP server that echoes every connection until the peer half-closes."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    received = []

    def serve():
        while True:
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            with conn:
                chunks = []
                while True:
                    data = conn.recv(4096)
                    if not data:
                        break
                    chunks.append(data)
                    conn.sendall(data)
                received.append(b"".join(chunks))

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    host, port = listener.getsockname()
    yield f"{host}:{port}", received
    listener.close()


def _unused_addr():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    host, port = probe.getsockname()
    probe.close()
    return f"{host}:{port}"


def _start(ssh_addr):
    server = StunTLSServer("127.0.0.1:0", ssh_addr, "cert.pem", "key.pem")
    client, server_side = socket.socketpair()
    client.settimeout(5)
    thread = threading.Thread(target=server.handle_connection, args=(server_side,), daemon=True)
    thread.start()
    return client, client.makefile("rb"), thread


def _read_head(stream):
    lines = []
    while True:
        line = stream.readline()
        lines.append(line)
        if line in (b"\r\n", b""):
            return b"".join(lines)


def test_accept_key_rfc_example():
    assert compute_accept_key("dGhlIHNhbXBsZSBub25jZQ==") == "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="


def test_small_frame_header_bytes():
    frame = encode_ws_frame(0x2, b"abc")
    assert frame == b"\x82\x03abc"


def test_medium_frame_uses_16_bit_length():
    payload = bytes(200)
    frame = encode_ws_frame(0x2, payload)
    assert frame[1] == 126
    assert int.from_bytes(frame[2:4], "big") == len(payload)
    assert len(frame) == 4 + len(payload)


def test_large_frame_uses_64_bit_length():
    payload = bytes(70000)
    frame = encode_ws_frame(0x2, payload)
    assert frame[1] == 127
    assert int.from_bytes(frame[2:10], "big") == len(payload)


@pytest.mark.parametrize("size", [0, 5, 125, 126, 65535, 65536])
@pytest.mark.parametrize("opcode", [0x1, 0x2, 0x9])
def test_frame_round_trip(size, opcode):
    payload = bytes(i % 251 for i in range(size))
    assert read_ws_frame(io.BytesIO(encode_ws_frame(opcode, payload))) == (opcode, payload)


def test_read_masked_frame_rfc_example():
    frame = bytes([0x81, 0x85, 0x37, 0xFA, 0x21, 0x3D, 0x7F, 0x9F, 0x4D, 0x51, 0x58])
    assert read_ws_frame(io.BytesIO(frame)) == (0x1, b"Hello")


def test_truncated_frame_raises():
    frame = encode_ws_frame(0x2, b"payload")[:-2]
    with pytest.raises(EOFError):
        read_ws_frame(io.BytesIO(frame))


def test_read_http_request_parses_headers():
    raw = b"GET /path HTTP/1.1\r\nHost: example.com\r\nUpgrade:  WebSocket \r\nbogus line\r\n\r\nrest"
    stream = io.BytesIO(raw)
    request = read_http_request(stream)
    assert request == HttpRequest(
        method="GET", path="/path", headers={"host": "example.com", "upgrade": "WebSocket"}
    )
    assert stream.read() == b"rest"


def test_read_http_request_bad_line():
    with pytest.raises(ValueError):
        read_http_request(io.BytesIO(b"GARBAGE\r\n\r\n"))


def test_read_http_request_truncated():
    with pytest.raises(EOFError):
        read_http_request(io.BytesIO(b"GET / HTTP/1.1\r\nHost: example.com\r\n"))


def test_raw_ssh_is_relayed(echo_backend):
    addr, received = echo_backend
    client, stream, thread = _start(addr)
    banner = b"SSH-2.0-client\r\n"
    client.sendall(banner)
    assert stream.read(len(banner)) == banner
    client.shutdown(socket.SHUT_WR)
    thread.join(5)
    assert not thread.is_alive()
    assert received == [banner]
    client.close()


def test_payload_prefix_is_stripped(echo_backend):
    addr, received = echo_backend
    client, stream, thread = _start(addr)
    banner = b"SSH-2.0-client\r\n"
    client.sendall(b"GARBAGE SS" + banner)
    assert stream.read(len(banner)) == banner
    client.shutdown(socket.SHUT_WR)
    thread.join(5)
    assert received == [banner]
    client.close()


def test_payload_without_banner_is_dropped(echo_backend):
    addr, received = echo_backend
    client, stream, thread = _start(addr)
    client.sendall(b"x" * 9000)
    assert stream.read() == b""
    thread.join(5)
    assert received == []
    client.close()


def test_http_connect_tunnel(echo_backend):
    addr, received = echo_backend
    client, stream, thread = _start(addr)
    client.sendall(b"CONNECT example.com:22 HTTP/1.1\r\nHost: example.com\r\n\r\n")
    assert _read_head(stream) == b"HTTP/1.1 200 Connection Established\r\n\r\n"
    client.sendall(b"data")
    assert stream.read(4) == b"data"
    client.shutdown(socket.SHUT_WR)
    thread.join(5)
    assert received == [b"data"]
    client.close()


def test_connect_prefix_with_other_method():
    client, stream, thread = _start(_unused_addr())
    client.sendall(b"CONNX / HTTP/1.1\r\n\r\n")
    assert _read_head(stream) == b"HTTP/1.1 405 Method Not Allowed\r\n\r\n"
    thread.join(5)
    client.close()


def test_http_connect_backend_down():
    client, stream, thread = _start(_unused_addr())
    client.sendall(b"CONNECT example.com:22 HTTP/1.1\r\n\r\n")
    assert _read_head(stream) == b"HTTP/1.1 502 Bad Gateway\r\n\r\n"
    thread.join(5)
    client.close()


def test_websocket_without_upgrade_is_rejected():
    client, stream, thread = _start(_unused_addr())
    client.sendall(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
    assert _read_head(stream) == b"HTTP/1.1 400 Bad Request\r\n\r\n"
    thread.join(5)
    client.close()


def test_websocket_tunnel(echo_backend):
    addr, received = echo_backend
    client, stream, thread = _start(addr)
    key = "dGhlIHNhbXBsZSBub25jZQ=="
    client.sendall(
        (
            "GET /ws HTTP/1.1\r\nHost: example.com\r\nUpgrade: websocket\r\n"
            f"Connection: Upgrade\r\nSec-WebSocket-Key: {key}\r\n\r\n"
        ).encode()
    )
    head = _read_head(stream)
    assert head.startswith(b"HTTP/1.1 101 Switching Protocols\r\n")
    assert f"Sec-WebSocket-Accept: {compute_accept_key(key)}\r\n".encode() in head

    data = b"SSH-2.0-client\r\n"
    client.sendall(bytes([0x82, 0x80 | len(data)]) + bytes(4) + data)
    echoed = b""
    while len(echoed) < len(data):
        opcode, payload = read_ws_frame(stream)
        assert opcode == 0x2
        echoed += payload
    assert echoed == data

    client.sendall(bytes([0x88, 0x80]) + bytes(4))
    opcode, payload = read_ws_frame(stream)
    assert opcode == 0x8
    assert int.from_bytes(payload, "big") == 1000
    thread.join(5)
    assert received == [data]
    client.close()


def test_websocket_backend_down_sends_close():
    client, stream, thread = _start(_unused_addr())
    client.sendall(b"GET / HTTP/1.1\r\nUpgrade: websocket\r\nSec-WebSocket-Key: abc\r\n\r\n")
    head = _read_head(stream)
    assert head.startswith(b"HTTP/1.1 101")
    opcode, payload = read_ws_frame(stream)
    assert opcode == 0x8
    assert int.from_bytes(payload, "big") == 1000
    thread.join(5)
    client.close()


def test_serve_forever_missing_cert_raises(tmp_path):
    server = StunTLSServer(
        "127.0.0.1:0", "127.0.0.1:22", str(tmp_path / "cert.pem"), str(tmp_path / "key.pem")
    )
    with pytest.raises(OSError, match="load TLS cert"):
        server.serve_forever()
    assert server.address is None