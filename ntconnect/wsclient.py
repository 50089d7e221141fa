"""WebSocket transport for the device socket."""

from __future__ import annotations

import queue
import threading
from typing import Any

import msgpack
import websocket

from ntconnect.api import ApiError, Authz, ProtoMsg, Socket

API_URL_CONNECT = "/api/devices/v1/deviceconnect/connect"
HANDSHAKE_TIMEOUT = 60.0

_CLOSED = object()


class SocketClosed(Exception):
    """The socket was closed before the operation could run."""

    def __init__(self, message: str = "closed") -> None:
        super().__init__(message)


def connect_url(server_url: str) -> str:
    """Return the device-connect WebSocket URL for *server_url*."""
    url = server_url.rstrip("/") + API_URL_CONNECT
    if url.startswith("http"):
        url = url.replace("http", "ws", 1)
    return url


class WebSocket(Socket):
    """A device socket over an open WebSocket connection.

    A background thread reads frames, decodes them from msgpack and queues
    them for :meth:`receive`.
    """

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._messages: queue.Queue = queue.Queue()
        self._errors: queue.Queue = queue.Queue(maxsize=1)
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._reader = threading.Thread(
            target=self._receive_loop, name="ws-receive", daemon=True
        )
        self._reader.start()

    def _push_error(self, err: BaseException) -> None:
        try:
            self._errors.put_nowait(err)
        except queue.Full:
            pass

    def _decode(self, data: bytes) -> ProtoMsg:
        try:
            doc = msgpack.unpackb(data, raw=False)
            if not isinstance(doc, dict):
                raise ValueError("message is not a msgpack map")
            return ProtoMsg.from_dict(doc)
        except Exception as err:  # noqa: BLE001 - reported through next_error
            self._push_error(err)
            return ProtoMsg()

    def _receive_loop(self) -> None:
        try:
            while True:
                try:
                    opcode, data = self._conn.recv_data()
                except Exception as err:  # noqa: BLE001 - reported through next_error
                    self._push_error(err)
                    return
                if opcode == websocket.ABNF.OPCODE_CLOSE:
                    self._push_error(
                        websocket.WebSocketConnectionClosedException(
                            "connection closed by peer"
                        )
                    )
                    return
                msg = self._decode(data)
                if self._done.is_set():
                    return
                self._messages.put(msg)
        finally:
            self._messages.put(_CLOSED)
            self.close()

    def send(self, msg: ProtoMsg) -> None:
        if self._done.is_set():
            raise SocketClosed()
        payload = msgpack.packb(msg.to_dict(), use_bin_type=True)
        with self._write_lock:
            self._conn.send_binary(payload)

    def receive(self, timeout: float | None = None) -> ProtoMsg | None:
        try:
            item = self._messages.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message received") from None
        if item is _CLOSED:
            self._messages.put(_CLOSED)
            return None
        return item

    def next_error(self, timeout: float | None = 0) -> BaseException | None:
        try:
            if timeout == 0:
                return self._errors.get_nowait()
            return self._errors.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
        self._conn.close()


class WebSocketClient:
    """Opens device sockets; the socket part of the API client."""

    def __init__(self, ssl_options: dict[str, Any] | None = None) -> None:
        self.ssl_options = dict(ssl_options) if ssl_options else None

    def open_socket(self, cancel: threading.Event | None, authz: Authz) -> WebSocket:
        """Connect to the device-connect endpoint using *authz*."""
        if cancel is not None and cancel.is_set():
            raise InterruptedError("operation cancelled")
        options: dict[str, Any] = {
            "header": [f"Authorization: Bearer {authz.token}"],
            "timeout": HANDSHAKE_TIMEOUT,
            "enable_multithread": True,
        }
        if self.ssl_options:
            options["sslopt"] = dict(self.ssl_options)
        try:
            conn = websocket.create_connection(connect_url(authz.server_url), **options)
        except websocket.WebSocketBadStatusException as err:
            status = getattr(err, "status_code", 0) or 0
            if status >= 300:
                raise ApiError(status) from err
            raise
        conn.settimeout(None)
        return WebSocket(conn)