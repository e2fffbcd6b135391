"""
Access-control capabilities (imperative shell).

A capability is a pure predicate over a presented credential and the canonical
payload of the call being authorized. The service holds one capability for the
admin and one for the tier-setting authority; both are injected at
construction and swapped only through `change_admin` / `change_authority`.

Implementations:
- `PrincipalCapability`: the credential is an identity string; constant-time equality.
- `BlsCapability`: the credential is a BLS12-381 (G2Basic) signature over
  SHA256(domain_sep("tier_call:<namespace>") || payload). Binding the
  signature to the payload means a credential authorizes exactly one call.
- `DenyAllCapability`: fail-closed placeholder.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Optional, Tuple

from ..state.canonical import canonical_json_bytes, domain_sep_bytes, hex_to_bytes


try:
    from py_ecc.bls import G2Basic

    _BLS_AVAILABLE = True
except Exception:  # pragma: no cover - optional dependency
    G2Basic = None  # type: ignore[assignment]
    _BLS_AVAILABLE = False


DEFAULT_NAMESPACE = "activity-tier-local"


def call_payload(op: str, **fields: Any) -> bytes:
    """Canonical bytes describing one call; what a BLS credential signs."""
    body = {"op": op}
    body.update(fields)
    return canonical_json_bytes(body)


def call_message_hash(payload: bytes, *, namespace: str = DEFAULT_NAMESPACE) -> bytes:
    return hashlib.sha256(domain_sep_bytes(f"tier_call:{namespace}", version=1) + payload).digest()


class Capability:
    """Interface for authorizing a call."""

    def permits(self, credential: object, payload: bytes) -> Tuple[bool, Optional[str]]:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


class DenyAllCapability(Capability):
    def permits(self, credential: object, payload: bytes) -> Tuple[bool, Optional[str]]:
        return False, "capability disabled"


class PrincipalCapability(Capability):
    """Identity check: the credential must equal the configured principal."""

    def __init__(self, principal: str) -> None:
        if not isinstance(principal, str) or not principal:
            raise ValueError("principal must be a non-empty string")
        self._principal = principal

    def permits(self, credential: object, payload: bytes) -> Tuple[bool, Optional[str]]:
        if not isinstance(credential, str):
            return False, "credential must be a principal string"
        if not hmac.compare_digest(credential.encode("utf-8"), self._principal.encode("utf-8")):
            return False, "principal mismatch"
        return True, None

    def describe(self) -> str:
        return f"principal:{self._principal}"


class BlsCapability(Capability):
    """Signature check against a 48-byte BLS12-381 G1 public key."""

    def __init__(self, pubkey_hex: str, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        pubkey = hex_to_bytes(pubkey_hex, name="pubkey")
        if len(pubkey) != 48:
            raise ValueError(f"pubkey must be 48 bytes, got {len(pubkey)}")
        self._pubkey = pubkey
        self._namespace = namespace

    @property
    def pubkey_hex(self) -> str:
        return "0x" + self._pubkey.hex()

    def permits(self, credential: object, payload: bytes) -> Tuple[bool, Optional[str]]:
        if not _BLS_AVAILABLE:
            return False, "py_ecc (BLS) not available"
        if not isinstance(credential, str):
            return False, "credential must be a hex signature"
        try:
            sig = hex_to_bytes(credential, name="signature")
            if len(sig) != 96:
                return False, "signature must be 96 bytes"
            msg_hash = call_message_hash(payload, namespace=self._namespace)
            ok = bool(G2Basic.Verify(self._pubkey, msg_hash, sig))  # type: ignore[attr-defined]
        except Exception as exc:
            return False, f"signature verification error: {exc}"
        if not ok:
            return False, "invalid signature"
        return True, None

    def describe(self) -> str:
        return f"bls:{self.pubkey_hex}"


def sign_call(secret_key: int, payload: bytes, *, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Produce a `BlsCapability` credential for *payload* (authority-side helper)."""
    if not _BLS_AVAILABLE:
        raise ImportError("py_ecc not available. Install with: pip install py-ecc")
    sig = G2Basic.Sign(secret_key, call_message_hash(payload, namespace=namespace))  # type: ignore[attr-defined]
    return "0x" + bytes(sig).hex()
