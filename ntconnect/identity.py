"""Generation of the device identity used for authentication."""

from __future__ import annotations

import json
import os
import socket
from typing import Any, Iterable, Mapping

import psutil
from cryptography.hazmat.primitives import serialization

from ntconnect.api import Identity

EDGE_ENV_HOST_NAME = "IOTEDGE_IOTHUBHOSTNAME"
EDGE_ENV_DEVICE_ID = "IOTEDGE_DEVICEID"
EDGE_ENV_MODULE_ID = "IOTEDGE_MODULEID"


def public_key_pem(private_key: Any) -> str:
    """Return the PEM "PUBLIC KEY" block for *private_key*."""
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _interface_order(names: Iterable[str]) -> list[str]:
    names = list(names)
    try:
        indexed = [name for _, name in sorted(socket.if_nameindex())]
    except (OSError, AttributeError):
        return names
    ordered = [name for name in indexed if name in names]
    ordered.extend(name for name in names if name not in ordered)
    return ordered


def _is_skipped(name: str, stats: Mapping[str, Any]) -> bool:
    flags_text = getattr(stats.get(name), "flags", None)
    if flags_text is None:
        return name == "lo" or (name.startswith("lo") and name[2:].isdigit())
    flags = set(flags_text.split(","))
    return "loopback" in flags or "pointopoint" in flags


def first_mac_address() -> str | None:
    """Hardware address of the first non-loopback, non point-to-point interface.

    Returns "" when that interface has no hardware address and None when
    there is no such interface.
    """
    addrs = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    for name in _interface_order(addrs):
        if _is_skipped(name, stats):
            continue
        for addr in addrs.get(name, []):
            if addr.family == psutil.AF_LINK and addr.address:
                return addr.address.lower().replace("-", ":")
        return ""
    return None


def parse_extra_identity(values: Iterable[str] | None) -> dict[str, str]:
    """Parse ``key=value`` strings into a mapping; later keys win."""
    result: dict[str, str] = {}
    for value in values or ():
        key, sep, rest = value.partition("=")
        if not sep:
            raise ValueError(
                "malformed identity key/value pair: expected format: `key=value`"
            )
        result[key] = rest
    return result


def generate_identity_data(
    identity_path: str | os.PathLike,
    tenant_token: str,
    private_key: Any,
    extra_values: Iterable[str] | None,
    environ: Mapping[str, str] | None = None,
) -> Identity:
    """Build the device identity, write it to *identity_path* and return it."""
    identity = Identity(
        data="", public_key=public_key_pem(private_key), tenant_token=tenant_token or ""
    )
    identity_data: dict[str, str] = {}
    mac = first_mac_address()
    if mac is not None:
        identity_data["mac"] = mac
    identity_data.update(parse_extra_identity(extra_values))

    env = os.environ if environ is None else environ
    if EDGE_ENV_HOST_NAME in env:
        identity_data["iothub:hostname"] = env[EDGE_ENV_HOST_NAME]
        external_id = ""
        if EDGE_ENV_DEVICE_ID in env:
            external_id = env[EDGE_ENV_DEVICE_ID]
            identity_data["iothub:device_id"] = external_id
        if EDGE_ENV_MODULE_ID in env:
            external_id += "/" + env[EDGE_ENV_MODULE_ID]
            identity_data["iothub:module_id"] = env[EDGE_ENV_MODULE_ID]
        if external_id:
            identity.external_id = "iot-hub " + external_id

    fd = os.open(identity_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        identity.data = json.dumps(
            identity_data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )
        fh.write(identity.to_json() + "\n")
    return identity