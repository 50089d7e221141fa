"""Device inventory attributes: parsing, digesting and serialisation."""

from __future__ import annotations

import json
from typing import Iterable, Union

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1


def encode_value(values: list[str]) -> Union[str, list[str]]:
    """Return the JSON value for an attribute: "", a single string or a list."""
    if not values:
        return ""
    if len(values) == 1:
        return values[0]
    return list(values)


class Inventory(dict):
    """Mapping of attribute name to the list of its values."""

    @classmethod
    def from_stream(cls, stream: Iterable[Union[str, bytes]]) -> Inventory:
        """Read ``key=value`` lines; lines without ``=`` are skipped.

        Repeated keys collect their values in order. Errors raised while
        reading propagate to the caller.
        """
        inv = cls()
        for raw in stream:
            line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            if line.endswith("\n"):
                line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]
            key, sep, value = line.partition("=")
            if not sep:
                continue
            inv.setdefault(key, []).append(value)
        return inv

    def digest(self) -> bytes:
        """FNV-1 64-bit hash over the sorted ``key=value`` lines."""
        h = _FNV64_OFFSET
        for key in sorted(self):
            for value in self[key]:
                for byte in f"{key}={value}\n".encode("utf-8"):
                    h = (h * _FNV64_PRIME) & _MASK64
                    h ^= byte
        return h.to_bytes(8, "big")

    def to_json(self) -> str:
        """Serialise as a name-sorted list of ``{"name", "value"}`` objects."""
        doc = [{"name": key, "value": encode_value(self[key])} for key in sorted(self)]
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)