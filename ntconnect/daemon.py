"""The connection daemon: keeps the device socket open and routes messages."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from typing import Any, Mapping, Protocol, Sequence, Union

from ntconnect.api import (
    PROTO_TYPE_SHELL,
    Authz,
    Client,
    ProtoHeader,
    ProtoMsg,
    Socket,
    is_retryable,
    is_unauthorized,
)
from ntconnect.backoff import ExpBackoff
from ntconnect.inventory import Inventory

log = logging.getLogger(__name__)

MESSAGE_TYPE_SPAWN_SHELL = "new"
MESSAGE_TYPE_STOP_SHELL = "stop"
MESSAGE_TYPE_SHELL_COMMAND = "shell"
MESSAGE_TYPE_RESIZE_SHELL = "resize"
MESSAGE_TYPE_PONG_SHELL = "pong"

STATUS_NORMAL = 0
STATUS_ERROR = 1

PROPERTY_TERMINAL_HEIGHT = "terminal_height"
PROPERTY_TERMINAL_WIDTH = "terminal_width"
PROPERTY_USER_ID = "user_id"

_SHELL_MESSAGE_TYPES = frozenset(
    {
        MESSAGE_TYPE_SPAWN_SHELL,
        MESSAGE_TYPE_STOP_SHELL,
        MESSAGE_TYPE_SHELL_COMMAND,
        MESSAGE_TYPE_RESIZE_SHELL,
        MESSAGE_TYPE_PONG_SHELL,
    }
)

_Command = Union[str, "os.PathLike[str]", Sequence[str]]


class _Router(Protocol):
    def route_message(self, msg: ProtoMsg, sock: Socket) -> None: ...


class ShellLimitError(Exception):
    """The maximum number of shells is already running."""

    def __init__(self, message: str = "too many shells already running") -> None:
        super().__init__(message)


class UnknownMessageError(Exception):
    """No handler exists for the message's protocol and type."""


def _num(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def map_terminal_size(properties: Mapping[str, Any] | None) -> tuple[int, int]:
    """Return the requested (height, width); 0 for anything missing or invalid."""
    properties = properties or {}
    if PROPERTY_TERMINAL_HEIGHT not in properties or PROPERTY_TERMINAL_WIDTH not in properties:
        return 0, 0
    height = _num(properties[PROPERTY_TERMINAL_HEIGHT])
    width = _num(properties[PROPERTY_TERMINAL_WIDTH])
    return (
        height & 0xFFFF if height > 0 else 0,
        width & 0xFFFF if width > 0 else 0,
    )


def error_response(msg: ProtoMsg, text: str) -> ProtoMsg:
    """Build the error reply to *msg* carrying *text* as its body."""
    return ProtoMsg(
        header=ProtoHeader(
            proto=msg.header.proto,
            msg_type=msg.header.msg_type,
            session_id=msg.header.session_id,
            properties={"status": STATUS_ERROR},
        ),
        body=text.encode("utf-8"),
    )


def _send_quietly(sock: Socket, msg: ProtoMsg) -> None:
    try:
        sock.send(msg)
    except Exception as err:  # noqa: BLE001 - a failed reply must not mask the cause
        log.error("unable to send the response message: %s", err)


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise InterruptedError("operation cancelled")


class Daemon:
    """Connects to the server, routes incoming messages and reports inventory."""

    poll_interval = 0.5
    inventory_interval: float | None = None

    def __init__(
        self,
        client: Client,
        inventory_executable: _Command | None,
        router: _Router | None,
        max_shells: int,
    ) -> None:
        self.client = client
        self.inventory_executable = inventory_executable
        self.router = router
        self.max_shells = max_shells
        self.shells_spawned = 0
        self.inventory_digest: bytes | None = None
        self._done = threading.Event()
        self._shells_lock = threading.Lock()

    def stop(self) -> None:
        """Ask the message loop to finish."""
        self._done.set()

    def _stopped(self, cancel: threading.Event | None) -> bool:
        return self._done.is_set() or (cancel is not None and cancel.is_set())

    def _log_reauthorize(self, attempt: int) -> None:
        if isinstance(self.client, ExpBackoff):
            next_at, number = self.client.next_attempt()
            until = next_at - time.time() if next_at is not None else -1.0
            when = "now" if until < 0 else f"{round(until, 2)}s"
            log.info("attempting to reauthorize %s: attempt %d", when, number)
        else:
            log.info("attempting to reauthorize: attempt %d", attempt)

    def _authenticate(self, cancel: threading.Event | None) -> Authz:
        attempts = 0
        while True:
            _check_cancel(cancel)
            try:
                return self.client.authenticate(cancel)
            except InterruptedError:
                raise
            except Exception as err:  # noqa: BLE001 - every failure is retried
                log.info("authorization request failed: %s", err)
                if is_retryable(err):
                    attempts += 1
                    self._log_reauthorize(attempts)

    def connect(
        self, cancel: threading.Event | None, authz: Authz | None
    ) -> tuple[Socket, Authz]:
        """Authorize when needed and open the device socket.

        Retryable failures are retried; an unauthorized reply triggers a new
        authorization. Other socket errors are raised.
        """
        err: BaseException | None = None
        while True:
            _check_cancel(cancel)
            if authz is None or authz.is_zero() or is_unauthorized(err):
                log.info("client not authorized: sending authorization request")
                authz = self._authenticate(cancel)
                err = None
                continue
            try:
                sock = self.client.open_socket(cancel, authz)
            except InterruptedError:
                raise
            except Exception as exc:  # noqa: BLE001 - classified below
                if not is_retryable(exc):
                    log.error("failed to establish socket connection: %s", exc)
                    raise
                err = exc
                continue
            log.info("connection established with %r", authz.server_url)
            return sock, authz

    def _inventory_command(self) -> list[str]:
        exe = self.inventory_executable
        if not exe:
            raise ValueError("no inventory executable configured")
        if isinstance(exe, (str, os.PathLike)):
            return [os.fspath(exe)]
        return [os.fspath(part) for part in exe]

    def dispatch_inventory(self, cancel: threading.Event | None, authz: Authz) -> bool:
        """Run the inventory executable and submit its output if it changed.

        Returns True when the inventory was sent, False when it was unchanged.
        """
        log.debug("running inventory script")
        cmd = self._inventory_command()
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as err:
            log.error("error collecting inventory: %s", err)
            raise
        with proc:
            while True:
                try:
                    out, errout = proc.communicate(timeout=0.1)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        proc.kill()
                        proc.communicate()
                        raise InterruptedError("operation cancelled") from None
        for line in errout.decode("utf-8", errors="replace").splitlines():
            log.error("stderr: %s", line)
        if proc.returncode != 0:
            error = subprocess.CalledProcessError(proc.returncode, cmd, out, errout)
            log.error("error collecting inventory: %s", error)
            raise error

        inventory = Inventory.from_stream(
            out.decode("utf-8", errors="replace").splitlines()
        )
        digest = inventory.digest()
        if digest == self.inventory_digest:
            log.debug("inventory did not change since last time")
            return False
        try:
            self.client.send_inventory(cancel, authz, inventory)
        except Exception as err:
            log.error("failed to submit inventory: %s", err)
            raise
        log.debug('inventory submitted: signature "0x%s"', digest.hex())
        self.inventory_digest = digest
        return True

    def _start_inventory(
        self, cancel: threading.Event | None, authz: Authz
    ) -> threading.Event:
        inv_cancel = threading.Event()
        if not self.inventory_executable:
            return inv_cancel

        def run() -> None:
            watcher = inv_cancel
            try:
                if cancel is not None and cancel.is_set():
                    return
                self.dispatch_inventory(watcher, authz)
            except Exception:  # noqa: BLE001 - already logged by dispatch_inventory
                pass

        threading.Thread(target=run, name="inventory", daemon=True).start()
        return inv_cancel

    def decrease_spawned_shells_count(self, count: int) -> None:
        """Lower the running-shell counter by *count*, never below zero."""
        with self._shells_lock:
            if self.shells_spawned == 0:
                log.warning("can't decrement shellsSpawned count: it is 0.")
            elif count >= self.shells_spawned:
                self.shells_spawned = 0
            else:
                self.shells_spawned -= count

    def _reject(self, msg: ProtoMsg, sock: Socket) -> None:
        err = UnknownMessageError(
            f"unknown message protocol and type: {msg.header.proto}/{msg.header.msg_type}"
        )
        _send_quietly(sock, error_response(msg, str(err)))
        raise err

    def _delegate(self, msg: ProtoMsg, sock: Socket) -> None:
        assert self.router is not None
        try:
            self.router.route_message(msg, sock)
        except Exception as err:
            log.error("%s", err)
            _send_quietly(sock, error_response(msg, str(err)))
            raise

    def _route_shell(self, msg: ProtoMsg, sock: Socket) -> None:
        msg_type = msg.header.msg_type
        if self.router is None or msg_type not in _SHELL_MESSAGE_TYPES:
            self._reject(msg, sock)
        if msg_type == MESSAGE_TYPE_SPAWN_SHELL:
            with self._shells_lock:
                at_limit = self.shells_spawned >= self.max_shells
            if at_limit:
                err = ShellLimitError()
                log.error("%s", err)
                _send_quietly(sock, error_response(msg, str(err)))
                raise err
            self._delegate(msg, sock)
            with self._shells_lock:
                self.shells_spawned += 1
            return
        self._delegate(msg, sock)
        if msg_type == MESSAGE_TYPE_STOP_SHELL:
            self.decrease_spawned_shells_count(1)

    def route_message(self, msg: ProtoMsg, sock: Socket) -> None:
        """Dispatch one incoming message; errors are replied to and raised."""
        if msg.header.proto == PROTO_TYPE_SHELL:
            self._route_shell(msg, sock)
        elif self.router is None:
            self._reject(msg, sock)
        else:
            self.router.route_message(msg, sock)

    def message_loop(self, cancel: threading.Event | None = None) -> None:
        """Run until stopped, reconnecting whenever the socket closes.

        Raises when a connection cannot be (re-)established.
        """
        sock, authz = self.connect(cancel, None)
        inv_cancel = self._start_inventory(cancel, authz)
        interval = self.inventory_interval
        next_inventory = time.monotonic() + interval if interval else None
        try:
            while not self._stopped(cancel):
                if next_inventory is not None and time.monotonic() >= next_inventory:
                    inv_cancel.set()
                    inv_cancel = self._start_inventory(cancel, authz)
                    next_inventory += interval  # type: ignore[operator]
                try:
                    msg = sock.receive(timeout=self.poll_interval)
                except TimeoutError:
                    pending = sock.next_error(0)
                    if pending is not None:
                        log.error("received error from ingest channel: %s", pending)
                    continue
                if msg is None:
                    closed_err = sock.next_error(0)
                    if closed_err is not None:
                        log.warning("socket closed with error: %s", closed_err)
                    else:
                        log.warning("socket closed")
                    sock.close()
                    sock, authz = self.connect(cancel, authz)
                    continue
                log.debug(
                    "got message: type:%s data length:%d",
                    msg.header.msg_type,
                    len(msg.body),
                )
                try:
                    self.route_message(msg, sock)
                except Exception as err:  # noqa: BLE001 - one bad message is not fatal
                    log.warning("error routing message: %s", err)
        finally:
            inv_cancel.set()
            sock.close()