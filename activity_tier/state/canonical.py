"""
Deterministic canonical encoding for snapshots and signed call payloads.

Canonical JSON: UTF-8, sorted keys, no whitespace, no NaN, no lone surrogates,
and no floats at all (fixed-point values are ints, so a float here is always a
caller bug).
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def _reject_surrogates(s: str) -> None:
    # Lone surrogates are not Unicode scalar values and cannot be encoded as UTF-8.
    for ch in s:
        if 0xD800 <= ord(ch) <= 0xDFFF:
            raise TypeError("surrogate code points are not allowed in canonical encoding")


def _reject_floats(value: Any) -> None:
    if isinstance(value, float):
        raise TypeError("floats are not allowed in canonical encoding")
    if isinstance(value, str):
        _reject_surrogates(value)
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise TypeError("dict keys must be str for canonical encoding")
            _reject_surrogates(k)
            _reject_floats(v)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _reject_floats(item)


def canonical_json_bytes(value: Any) -> bytes:
    """Canonical JSON encoding for hashing/signing."""
    _reject_floats(value)
    text = json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return text.encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return "0x" + hashlib.sha256(data).hexdigest()


def domain_sep_bytes(label: str, version: int = 1) -> bytes:
    """
    Domain separation prefix: ASCII, NUL-terminated so concatenation is unambiguous.
    """
    if not isinstance(label, str) or not label:
        raise TypeError("label must be a non-empty str")
    if "\x00" in label:
        raise ValueError("label must not contain NUL")
    try:
        label_bytes = label.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValueError("label must be ASCII") from exc
    if not isinstance(version, int) or isinstance(version, bool) or version <= 0:
        raise ValueError("version must be a positive int")
    return b"activity-tier:" + label_bytes + b":v" + str(version).encode("ascii") + b"\x00"


def bytes_to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str, *, name: str) -> bytes:
    """Decode a `0x`-optional hex string; raises ValueError with the field name."""
    if not isinstance(hex_str, str):
        raise TypeError(f"{name} must be a hex string")
    s = hex_str[2:] if hex_str.startswith(("0x", "0X")) else hex_str
    try:
        return bytes.fromhex(s)
    except ValueError as exc:
        raise ValueError(f"{name} is not valid hex: {exc}") from exc
