"""Exponential back-off wrapper around an API client."""

from __future__ import annotations

import random
import threading
import time

from ntconnect.api import Authz, Client, Socket
from ntconnect.inventory import Inventory

_BACKOFF_MIN = 1.0
_BACKOFF_MAX = 8 * 3600.0


class ExpBackoff(Client):
    """Client that delays each call exponentially after failures.

    Any successful call resets the delay.
    """

    def __init__(self, client: Client) -> None:
        self.client = client
        self._lock = threading.Lock()
        self._ready_at = time.monotonic()
        self._next_attempt: float | None = None
        self._duration = 0.0
        self._retries = 0

    def _inc_backoff(self) -> None:
        with self._lock:
            jitter = (1 - random.random() / 2) * _BACKOFF_MIN
            if self._duration > _BACKOFF_MAX:
                self._duration = _BACKOFF_MAX
            else:
                self._duration *= 2
            self._duration += jitter
            if self._next_attempt is None:
                self._next_attempt = time.time()
            self._next_attempt += self._duration
            self._ready_at = time.monotonic() + self._duration

    def _reset_backoff(self) -> None:
        with self._lock:
            self._next_attempt = None
            self._ready_at = time.monotonic()
            self._duration = _BACKOFF_MIN
            self._retries = 0

    def _limit(self, cancel: threading.Event | None) -> None:
        with self._lock:
            self._retries += 1
            remaining = max(self._ready_at - time.monotonic(), 0.0)
        if cancel is not None:
            if cancel.wait(remaining):
                raise InterruptedError("operation cancelled")
        elif remaining > 0:
            time.sleep(remaining)
        self._inc_backoff()

    def next_attempt(self) -> tuple[float | None, int]:
        """Return the epoch time of the next allowed attempt and its number."""
        with self._lock:
            return self._next_attempt, self._retries + 1

    def authenticate(self, cancel: threading.Event | None) -> Authz:
        self._limit(cancel)
        authz = self.client.authenticate(cancel)
        self._reset_backoff()
        return authz

    def open_socket(self, cancel: threading.Event | None, authz: Authz) -> Socket:
        self._limit(cancel)
        sock = self.client.open_socket(cancel, authz)
        self._reset_backoff()
        return sock

    def send_inventory(
        self, cancel: threading.Event | None, authz: Authz, inventory: Inventory
    ) -> None:
        self._limit(cancel)
        self.client.send_inventory(cancel, authz, inventory)
        self._reset_backoff()