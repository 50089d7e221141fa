import queue
import threading
from unittest import mock

import msgpack
import pytest
import websocket

from ntconnect.api import ApiError, Authz, ProtoHeader, ProtoMsg, is_unauthorized
from ntconnect.wsclient import (
    API_URL_CONNECT,
    SocketClosed,
    WebSocket,
    WebSocketClient,
    connect_url,
)


class FakeConn:
    def __init__(self, frames=()):
        self.frames = queue.Queue()
        for frame in frames:
            self.frames.put(frame)
        self.sent = []
        self.closes = 0
        self.timeout = "unset"
        self._lock = threading.Lock()

    def recv_data(self):
        item = self.frames.get(timeout=5)
        if isinstance(item, BaseException):
            raise item
        return item

    def send_binary(self, data):
        self.sent.append(data)

    def settimeout(self, value):
        self.timeout = value

    def close(self):
        with self._lock:
            self.closes += 1
        self.frames.put(websocket.WebSocketConnectionClosedException("closed"))


def _msg():
    return ProtoMsg(
        header=ProtoHeader(proto=1, msg_type="shell", session_id="sid-1",
                           properties={"status": 1}),
        body=b"ls -l\n",
    )


def _frame(msg):
    return (websocket.ABNF.OPCODE_BINARY, msgpack.packb(msg.to_dict(), use_bin_type=True))


@pytest.mark.parametrize(
    "server_url, expected",
    [
        ("https://example.com/", "wss://example.com" + API_URL_CONNECT),
        ("http://localhost:8080", "ws://localhost:8080" + API_URL_CONNECT),
        ("example.com//", "example.com" + API_URL_CONNECT),
    ],
)
def test_connect_url(server_url, expected):
    assert connect_url(server_url) == expected


def test_receive_decodes_message():
    conn = FakeConn([_frame(_msg())])
    sock = WebSocket(conn)
    try:
        assert sock.receive(timeout=5) == _msg()
    finally:
        sock.close()


def test_send_encodes_msgpack():
    conn = FakeConn()
    sock = WebSocket(conn)
    sock.send(_msg())
    sock.close()
    assert len(conn.sent) == 1
    decoded = ProtoMsg.from_dict(msgpack.unpackb(conn.sent[0], raw=False))
    assert decoded == _msg()


def test_send_after_close_raises():
    sock = WebSocket(FakeConn())
    sock.close()
    with pytest.raises(SocketClosed):
        sock.send(_msg())


def test_close_is_idempotent():
    conn = FakeConn()
    sock = WebSocket(conn)
    sock.close()
    sock.close()
    assert sock.receive(timeout=5) is None
    assert conn.closes == 1


def test_read_error_closes_and_is_reported():
    failure = OSError("boom")
    conn = FakeConn([failure])
    sock = WebSocket(conn)
    assert sock.receive(timeout=5) is None
    assert sock.receive(timeout=5) is None
    assert sock.next_error() is failure
    assert conn.closes == 1


def test_decode_error_delivers_empty_message():
    conn = FakeConn([(websocket.ABNF.OPCODE_BINARY, b"\xc1")])
    sock = WebSocket(conn)
    try:
        assert sock.receive(timeout=5) == ProtoMsg()
        assert isinstance(sock.next_error(timeout=5), Exception)
    finally:
        sock.close()


def test_close_frame_ends_stream():
    conn = FakeConn([(websocket.ABNF.OPCODE_CLOSE, b"")])
    sock = WebSocket(conn)
    assert sock.receive(timeout=5) is None
    assert isinstance(sock.next_error(), websocket.WebSocketConnectionClosedException)


def test_receive_timeout():
    sock = WebSocket(FakeConn())
    try:
        with pytest.raises(TimeoutError):
            sock.receive(timeout=0.05)
    finally:
        sock.close()


def test_next_error_empty():
    sock = WebSocket(FakeConn())
    try:
        assert sock.next_error() is None
    finally:
        sock.close()


def test_open_socket_passes_token_and_url():
    conn = FakeConn([_frame(_msg())])
    authz = Authz(token="token", server_url="https://example.com")
    with mock.patch("websocket.create_connection", return_value=conn) as create:
        sock = WebSocketClient().open_socket(None, authz)
    try:
        assert create.call_args.args[0] == connect_url("https://example.com")
        assert create.call_args.kwargs["header"] == ["Authorization: Bearer token"]
        assert conn.timeout is None
        assert sock.receive(timeout=5) == _msg()
    finally:
        sock.close()


def test_open_socket_passes_ssl_options():
    conn = FakeConn()
    options = {"ca_certs": "/tmp/ca.pem"}
    with mock.patch("websocket.create_connection", return_value=conn) as create:
        sock = WebSocketClient(options).open_socket(
            None, Authz(token="token", server_url="https://example.com")
        )
    sock.close()
    assert create.call_args.kwargs["sslopt"] == options


def test_open_socket_bad_status_is_api_error():
    failure = websocket.WebSocketBadStatusException(
        "Handshake status %d %s", 401, "Unauthorized"
    )
    with mock.patch("websocket.create_connection", side_effect=failure):
        with pytest.raises(ApiError) as excinfo:
            WebSocketClient().open_socket(
                None, Authz(token="token", server_url="https://example.com")
            )
    assert excinfo.value.code == 401
    assert is_unauthorized(excinfo.value)


def test_open_socket_cancelled():
    cancel = threading.Event()
    cancel.set()
    with mock.patch("websocket.create_connection") as create:
        with pytest.raises(InterruptedError):
            WebSocketClient().open_socket(
                cancel, Authz(token="token", server_url="https://example.com")
            )
    assert create.call_count == 0