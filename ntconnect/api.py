"""Core types shared by the device-connect API clients."""

from __future__ import annotations

import abc
import json
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ntconnect.inventory import Inventory

PROTO_TYPE_INVALID = 0
PROTO_TYPE_SHELL = 1
PROTO_TYPE_FILE_TRANSFER = 2
PROTO_TYPE_PORT_FORWARD = 3
PROTO_TYPE_MENDER_CLIENT = 4
PROTO_TYPE_CONTROL = 0xFFFF


def _compact_json(doc: Any) -> str:
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Identity:
    """The identity a device presents when it authenticates."""

    data: str
    public_key: str
    external_id: str = ""
    tenant_token: str = ""

    def to_json(self) -> str:
        """Serialise to the wire form; empty optional fields are omitted."""
        doc = {"id_data": self.data, "pubkey": self.public_key}
        if self.external_id:
            doc["external_id"] = self.external_id
        if self.tenant_token:
            doc["tenant_token"] = self.tenant_token
        return _compact_json(doc)

    @classmethod
    def from_json(cls, text: str | bytes) -> Identity:
        """Parse the wire form produced by :meth:`to_json`."""
        doc = json.loads(text)
        if not isinstance(doc, dict):
            raise ValueError("identity document must be a JSON object")
        return cls(
            data=doc.get("id_data", ""),
            public_key=doc.get("pubkey", ""),
            external_id=doc.get("external_id", ""),
            tenant_token=doc.get("tenant_token", ""),
        )


@dataclass
class Authz:
    """An authorization token together with the server it is valid for."""

    token: str = ""
    server_url: str = ""

    def is_zero(self) -> bool:
        """True when either the token or the server URL is missing."""
        return not self.token or not self.server_url

    def equal(self, other: Authz) -> bool:
        return self.server_url == other.server_url and self.token == other.token


@dataclass
class ProtoHeader:
    """Header of a protocol message."""

    proto: int = PROTO_TYPE_INVALID
    msg_type: str = ""
    session_id: str = ""
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProtoMsg:
    """A protocol message exchanged over the device socket."""

    header: ProtoHeader = field(default_factory=ProtoHeader)
    body: bytes = b""

    def to_dict(self) -> dict[str, Any]:
        """Return the mapping that is packed on the wire."""
        hdr: dict[str, Any] = {"proto": self.header.proto, "typ": self.header.msg_type}
        if self.header.session_id:
            hdr["sid"] = self.header.session_id
        if self.header.properties:
            hdr["props"] = dict(self.header.properties)
        doc: dict[str, Any] = {"hdr": hdr}
        if self.body:
            doc["body"] = bytes(self.body)
        return doc

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProtoMsg:
        """Build a message from an unpacked wire mapping."""
        hdr = data.get("hdr") or {}
        body = data.get("body") or b""
        if isinstance(body, str):
            body = body.encode("utf-8")
        return cls(
            header=ProtoHeader(
                proto=int(hdr.get("proto") or 0),
                msg_type=hdr.get("typ") or "",
                session_id=hdr.get("sid") or "",
                properties=dict(hdr.get("props") or {}),
            ),
            body=bytes(body),
        )


class Socket(abc.ABC):
    """A bidirectional message channel to the server."""

    @abc.abstractmethod
    def send(self, msg: ProtoMsg) -> None:
        """Send one message."""

    @abc.abstractmethod
    def receive(self, timeout: float | None = None) -> ProtoMsg | None:
        """Return the next message, or None once the socket is closed.

        Raises TimeoutError when nothing arrives within *timeout* seconds.
        """

    @abc.abstractmethod
    def next_error(self, timeout: float | None = 0) -> BaseException | None:
        """Return a pending receive error, or None if there is none."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the socket; closing twice is harmless."""

    def __enter__(self) -> Socket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Client(abc.ABC):
    """The operations the daemon needs from the server API."""

    @abc.abstractmethod
    def authenticate(self, cancel: threading.Event | None) -> Authz:
        """Obtain an authorization token."""

    @abc.abstractmethod
    def open_socket(self, cancel: threading.Event | None, authz: Authz) -> Socket:
        """Open the device socket."""

    @abc.abstractmethod
    def send_inventory(
        self, cancel: threading.Event | None, authz: Authz, inventory: Inventory
    ) -> None:
        """Submit inventory attributes."""


class ApiError(Exception):
    """The server answered with an unexpected HTTP status code."""

    def __init__(self, code: int) -> None:
        super().__init__(code)
        self.code = code

    def __str__(self) -> str:
        try:
            text = HTTPStatus(self.code).phrase
        except ValueError:
            text = ""
        return f"api: bad status code: {self.code} {text}"


def _find_api_error(err: BaseException | None) -> ApiError | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, ApiError):
            return err
        seen.add(id(err))
        err = err.__cause__
    return None


def is_unauthorized(err: BaseException | None) -> bool:
    """True when *err*, or an error it was raised from, is a 401."""
    api_err = _find_api_error(err)
    return api_err is not None and api_err.code == HTTPStatus.UNAUTHORIZED


def is_retryable(err: BaseException | None) -> bool:
    """True for a 401 or any 5xx status error."""
    api_err = _find_api_error(err)
    if api_err is None:
        return False
    return (
        api_err.code == HTTPStatus.UNAUTHORIZED
        or api_err.code >= HTTPStatus.INTERNAL_SERVER_ERROR
    )