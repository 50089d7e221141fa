import threading
import time

import pytest

from ntconnect.api import ApiError, Authz, Client
from ntconnect.backoff import ExpBackoff
from ntconnect.inventory import Inventory


class FakeClient(Client):
    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = []

    def _next(self, name, *args):
        self.calls.append((name, args))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def authenticate(self, cancel):
        return self._next("authenticate")

    def open_socket(self, cancel, authz):
        return self._next("open_socket", authz)

    def send_inventory(self, cancel, authz, inventory):
        self._next("send_inventory", authz, inventory)


AUTHZ = Authz(token="token", server_url="https://localhost")


def test_first_call_is_immediate_and_success_resets():
    fake = FakeClient([AUTHZ])
    client = ExpBackoff(fake)
    start = time.monotonic()
    assert client.authenticate(None) == AUTHZ
    assert time.monotonic() - start < 0.4
    assert client.next_attempt() == (None, 1)


def test_failure_schedules_next_attempt():
    fake = FakeClient([ApiError(500)])
    client = ExpBackoff(fake)
    before = time.time()
    with pytest.raises(ApiError):
        client.authenticate(None)
    when, attempt = client.next_attempt()
    assert attempt == 2
    assert when > before


def test_second_attempt_waits_after_failure():
    fake = FakeClient([ApiError(503), AUTHZ])
    client = ExpBackoff(fake)
    with pytest.raises(ApiError):
        client.authenticate(None)
    start = time.monotonic()
    assert client.authenticate(threading.Event()) == AUTHZ
    assert time.monotonic() - start >= 0.45
    assert client.next_attempt()[1] == 1


def test_cancelled_wait_does_not_call_client():
    fake = FakeClient([ApiError(503)])
    client = ExpBackoff(fake)
    with pytest.raises(ApiError):
        client.authenticate(None)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(InterruptedError):
        client.authenticate(cancel)
    assert len(fake.calls) == 1


def test_open_socket_and_send_inventory_pass_through():
    sentinel = object()
    fake = FakeClient([sentinel, None])
    client = ExpBackoff(fake)
    assert client.open_socket(None, AUTHZ) is sentinel
    inv = Inventory({"k": ["v"]})
    client.send_inventory(None, AUTHZ, inv)
    assert fake.calls == [("open_socket", (AUTHZ,)), ("send_inventory", (AUTHZ, inv))]