"""HTTP implementation of the API client."""

from __future__ import annotations

import base64
import hashlib
import ssl
import threading
from http import HTTPStatus
from typing import Any

import requests
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from ntconnect.api import ApiError, Authz, Client, Identity, Socket
from ntconnect.inventory import Inventory
from ntconnect.wsclient import WebSocketClient

API_URL_AUTH = "/api/devices/v1/authentication/auth_requests"
API_URL_INVENTORY = "/api/devices/v1/inventory/attributes"
BEARER_SCHEME = "Bearer"


def sign_sha256(private_key: Any, data: bytes) -> bytes:
    """Sign the SHA-256 digest of *data* with *private_key*.

    RSA keys use PKCS#1 v1.5, EC keys DER-encoded ECDSA; Ed25519 keys sign
    the message itself.
    """
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    digest = hashlib.sha256(data).digest()
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(digest, padding.PKCS1v15(), Prehashed(hashes.SHA256()))
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    raise TypeError(f"unsupported private key type: {type(private_key).__name__}")


def _ssl_options(verify: bool | str) -> dict[str, Any] | None:
    if verify is False:
        return {"cert_reqs": ssl.CERT_NONE, "check_hostname": False}
    if isinstance(verify, str):
        return {"ca_certs": verify}
    return None


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise InterruptedError("operation cancelled")


def _require_authz(authz: Authz | None) -> Authz:
    if authz is None or authz.is_zero():
        raise ApiError(HTTPStatus.UNAUTHORIZED)
    return authz


class HttpClient(Client):
    """Authenticates with a signed identity and talks to the server over HTTP."""

    def __init__(
        self,
        server_url: str,
        private_key: Any,
        identity: Identity | None,
        verify: bool | str = True,
        socket_client: Any = None,
    ) -> None:
        if private_key is None:
            raise ValueError("invalid client config: empty private key")
        if identity is None:
            raise ValueError("invalid client config: empty identity data")
        self.server_url = server_url.rstrip("/")
        self.private_key = private_key
        self.identity = identity
        self.session = requests.Session()
        self.session.verify = verify
        self.socket_client = (
            socket_client if socket_client is not None
            else WebSocketClient(_ssl_options(verify))
        )

    def authenticate(self, cancel: threading.Event | None) -> Authz:
        """Send a signed auth request and return the granted token."""
        _check_cancel(cancel)
        body = self.identity.to_json().encode("utf-8")
        signature = base64.b64encode(sign_sha256(self.private_key, body)).decode("ascii")
        rsp = self.session.post(
            self.server_url + API_URL_AUTH,
            data=body,
            headers={"Content-Type": "application/json", "X-Men-Signature": signature},
        )
        with rsp:
            if rsp.status_code >= 300:
                raise ApiError(rsp.status_code)
            granted = rsp.content.decode("utf-8")
        return Authz(token=granted, server_url=self.server_url)

    def open_socket(self, cancel: threading.Event | None, authz: Authz) -> Socket:
        _require_authz(authz)
        return self.socket_client.open_socket(cancel, authz)

    def send_inventory(
        self, cancel: threading.Event | None, authz: Authz, inventory: Inventory
    ) -> None:
        """Upload the inventory attributes."""
        authz = _require_authz(authz)
        _check_cancel(cancel)
        authorization_value = " ".join((BEARER_SCHEME, authz.token))
        rsp = self.session.put(
            self.server_url + API_URL_INVENTORY,
            data=inventory.to_json().encode("utf-8"),
            headers={
                "Authorization": authorization_value,
                "Content-Type": "application/json",
            },
        )
        with rsp:
            if rsp.status_code >= 300:
                raise ApiError(rsp.status_code)