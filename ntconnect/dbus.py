"""D-Bus support types: bus kinds, signal parameters and signal delivery."""

from __future__ import annotations

import enum
import queue
import threading
from dataclasses import dataclass
from typing import Any


class GBusType(enum.IntEnum):
    """Well-known message buses."""

    SYSTEM = 1
    SESSION = 2


@dataclass
class SignalParams:
    """One parameter carried by a D-Bus signal."""

    param_type: str
    param_data: Any


class DBusError(Exception):
    """An error reported by the D-Bus layer."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or ""

    def __str__(self) -> str:
        return self.message


class SignalHub:
    """Per-signal one-slot mailboxes used to wait for D-Bus signals."""

    def __init__(self) -> None:
        self._signals: dict[str, queue.Queue] = {}
        self._lock = threading.Lock()

    def channel_for_signal(self, signal_name: str) -> queue.Queue:
        """Return the mailbox for *signal_name*, creating it on first use."""
        with self._lock:
            channel = self._signals.get(signal_name)
            if channel is None:
                channel = queue.Queue(maxsize=1)
                self._signals[signal_name] = channel
            return channel

    def drain_signal(self, signal_name: str) -> None:
        """Discard a pending signal, if any."""
        try:
            self.channel_for_signal(signal_name).get_nowait()
        except queue.Empty:
            pass

    def handle_signal(self, signal_name: str, params: list[SignalParams]) -> None:
        """Deliver a signal; dropped if one is already pending."""
        try:
            self.channel_for_signal(signal_name).put_nowait(params)
        except queue.Full:
            pass

    def wait_for_signal(self, signal_name: str, timeout: float) -> list[SignalParams]:
        """Wait up to *timeout* seconds for a signal and return its parameters."""
        try:
            return self.channel_for_signal(signal_name).get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("timeout waiting for signal " + signal_name) from None


_CURRENT = "current"
_registry: dict[str, Any] = {}


def set_dbus_api(api: Any) -> None:
    """Install the process-wide D-Bus API object (None removes it)."""
    if api is None:
        _registry.pop(_CURRENT, None)
    else:
        _registry[_CURRENT] = api


def get_dbus_api() -> Any:
    """Return the process-wide D-Bus API object."""
    try:
        return _registry[_CURRENT]
    except KeyError:
        raise DBusError("no D-Bus interface available") from None