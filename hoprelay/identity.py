"""
Identity — node keys, sender credentials (blessings/discharges), signatures.

Requires secp256k1 (C bindings) for Schnorr signing. Will raise ImportError
if the library is unavailable — install with: pip install hoprelay[p2p]

Credential model:
    Blessing   — an issuer vouches that ``public_key`` may send as ``name``.
                 May carry third-party caveats that need a discharge.
    Discharge  — an issuer confirms a caveat is satisfied, until expires_at.

Verification is fail-closed: any malformed field, unknown issuer, expired
credential or bad signature makes ``validate_blessings`` return False.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence

if TYPE_CHECKING:
    from hoprelay.message import Message

log = logging.getLogger(__name__)

# Default key file location
_DEFAULT_KEY_PATH = Path.home() / ".hoprelay" / "node_key"


# ---------------------------------------------------------------------------
# Secp256k1 helpers — NO FALLBACK. secp256k1 is REQUIRED for real keys.
# ---------------------------------------------------------------------------

def _import_secp256k1():
    """Import secp256k1 C bindings. Raises ImportError if unavailable."""
    try:
        import secp256k1
        return secp256k1
    except ImportError:
        raise ImportError(
            "secp256k1 is required for node identity and signing. "
            "Install with: pip install hoprelay[p2p]"
        )


def generate_privkey() -> bytes:
    """Generate a 32-byte random private key."""
    return os.urandom(32)


def privkey_to_pubkey(privkey: bytes) -> str:
    """Derive the x-only public key (64 hex chars) from a private key."""
    lib = _import_secp256k1()
    pk = lib.PrivateKey(privkey)
    full = pk.pubkey.serialize(compressed=True)
    return full[1:].hex()


def schnorr_sign(digest: bytes, privkey: bytes) -> str:
    """Sign a 32-byte digest. Returns the signature as 128-char hex."""
    lib = _import_secp256k1()
    pk = lib.PrivateKey(privkey)
    sig = pk.schnorr_sign(digest, bip340tag=None, raw=True)
    return sig.hex()


def schnorr_verify(public_key: str, digest: bytes, signature: str) -> bool:
    """Verify a Schnorr signature against an x-only hex public key."""
    lib = _import_secp256k1()
    try:
        compressed = b"\x02" + bytes.fromhex(public_key)
        pk = lib.PublicKey(compressed, raw=True)
        return bool(pk.schnorr_verify(digest, bytes.fromhex(signature), bip340tag=None, raw=True))
    except Exception:
        return False


def load_or_create_key(key_path: Path | None = None) -> tuple[bytes, str]:
    """Load or generate the node's secp256k1 keypair.

    Returns (privkey_bytes, pubkey_hex). The key file holds hex, mode 600.
    """
    path = Path(key_path or _DEFAULT_KEY_PATH)

    if path.is_file():
        privkey = bytes.fromhex(path.read_text().strip())
    else:
        privkey = generate_privkey()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(privkey.hex())
        try:
            path.chmod(0o600)
        except OSError:
            pass  # Windows may not support chmod 600
        log.info("Created node key at %s", path)

    return privkey, privkey_to_pubkey(privkey)


def new_message_id() -> str:
    """Return a fresh, globally unique message identifier."""
    return os.urandom(16).hex()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def _digest(parts: list) -> bytes:
    encoded = json.dumps(parts, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).digest()


@dataclass(frozen=True)
class Blessing:
    """Issuer-signed statement binding a sender name to a public key."""

    name: str
    public_key: str
    issuer: str
    expires_at: int = 0
    caveats: tuple[str, ...] = ()
    signature: str = ""

    def signing_digest(self) -> bytes:
        return _digest([
            "blessing", self.name, self.public_key, self.issuer,
            self.expires_at, list(self.caveats),
        ])

    def is_expired(self, now: float) -> bool:
        return bool(self.expires_at) and now > self.expires_at

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d["caveats"] = list(self.caveats)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Blessing:
        return cls(
            name=str(d["name"]),
            public_key=str(d["public_key"]),
            issuer=str(d["issuer"]),
            expires_at=int(d.get("expires_at", 0)),
            caveats=tuple(str(c) for c in d.get("caveats", ())),
            signature=str(d.get("signature", "")),
        )


@dataclass(frozen=True)
class Discharge:
    """Issuer-signed proof that a third-party caveat is satisfied."""

    caveat_id: str
    issuer: str
    expires_at: int = 0
    signature: str = ""

    def signing_digest(self) -> bytes:
        return _digest(["discharge", self.caveat_id, self.issuer, self.expires_at])

    def is_expired(self, now: float) -> bool:
        return bool(self.expires_at) and now > self.expires_at

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Discharge:
        return cls(
            caveat_id=str(d["caveat_id"]),
            issuer=str(d["issuer"]),
            expires_at=int(d.get("expires_at", 0)),
            signature=str(d.get("signature", "")),
        )


def issue_blessing(
    issuer_privkey: bytes,
    name: str,
    public_key: str,
    expires_at: int = 0,
    caveats: Iterable[str] = (),
) -> Blessing:
    """Bless ``public_key`` as ``name``, signed with the issuer's key."""
    unsigned = Blessing(
        name=name,
        public_key=public_key,
        issuer=privkey_to_pubkey(issuer_privkey),
        expires_at=expires_at,
        caveats=tuple(caveats),
    )
    sig = schnorr_sign(unsigned.signing_digest(), issuer_privkey)
    return dataclasses.replace(unsigned, signature=sig)


def issue_discharge(issuer_privkey: bytes, caveat_id: str, expires_at: int = 0) -> Discharge:
    """Discharge ``caveat_id``, signed with the issuer's key."""
    unsigned = Discharge(
        caveat_id=caveat_id,
        issuer=privkey_to_pubkey(issuer_privkey),
        expires_at=expires_at,
    )
    sig = schnorr_sign(unsigned.signing_digest(), issuer_privkey)
    return dataclasses.replace(unsigned, signature=sig)


def sign_message(meta: Message, privkey: bytes) -> Message:
    """Return ``meta`` with its signature set by the sender's key."""
    return dataclasses.replace(meta, signature=schnorr_sign(meta.signing_digest(), privkey))


# ---------------------------------------------------------------------------
# Identity service
# ---------------------------------------------------------------------------

class IdentityService(Protocol):
    """What the relay core needs from the identity collaborator."""

    def validate_blessings(
        self,
        blessings: Sequence[Blessing],
        discharges: Sequence[Discharge],
        now: float,
    ) -> bool: ...

    def verify_signature(self, public_key: str, digest: bytes, signature: str) -> bool: ...


class KeyIdentityService:
    """Validate credentials against a fixed set of trusted issuer keys.

    Usage:
        identity = KeyIdentityService(trusted_issuers=[root_pubkey])
        ok = identity.validate_blessings(meta.sender_blessings,
                                         meta.sender_discharges, time.time())
    """

    def __init__(self, trusted_issuers: Iterable[str]) -> None:
        self.trusted_issuers = frozenset(trusted_issuers)

    def verify_signature(self, public_key: str, digest: bytes, signature: str) -> bool:
        if not public_key or not signature or len(signature) != 128:
            return False
        return schnorr_verify(public_key, digest, signature)

    def _valid_discharge(self, discharge: Discharge, now: float) -> bool:
        if discharge.issuer not in self.trusted_issuers:
            return False
        if discharge.is_expired(now):
            return False
        return self.verify_signature(
            discharge.issuer, discharge.signing_digest(), discharge.signature,
        )

    def validate_blessings(
        self,
        blessings: Sequence[Blessing],
        discharges: Sequence[Discharge],
        now: float,
    ) -> bool:
        try:
            if not blessings:
                return False
            discharged = {
                d.caveat_id for d in discharges if self._valid_discharge(d, now)
            }
            for blessing in blessings:
                if blessing.issuer not in self.trusted_issuers:
                    log.debug("Untrusted blessing issuer %s", blessing.issuer[:12])
                    return False
                if blessing.is_expired(now):
                    log.debug("Expired blessing %s", blessing.name)
                    return False
                if not self.verify_signature(
                    blessing.issuer, blessing.signing_digest(), blessing.signature,
                ):
                    return False
                if any(c not in discharged for c in blessing.caveats):
                    log.debug("Undischarged caveat on blessing %s", blessing.name)
                    return False
            return True
        except Exception:
            return False
