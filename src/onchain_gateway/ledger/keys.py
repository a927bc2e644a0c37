# Ledger Keys: public keys, Ed25519 keypairs, program-derived addresses
#
# A Pubkey is 32 raw bytes, rendered in base58 for humans and the wire.
# Keypairs are Ed25519 (cryptography). Program-derived addresses are
# SHA-256 digests of (seeds, nonce, program id) that are deliberately NOT
# valid Ed25519 points, so no private key can ever sign for them.

import hashlib
import itertools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

# ── Constants ────────────────────────────────────────────────────────

PUBKEY_LENGTH = 32
MAX_SEEDS = 16
MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

# Curve25519 field prime and the twisted Edwards constant d
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P

_unique_counter = itertools.count(1)


# ── Pubkey ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Pubkey:
    """A 32-byte ledger identity (wallet, record address or program id)."""

    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != PUBKEY_LENGTH:
            raise ValueError(f"Pubkey must be {PUBKEY_LENGTH} bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_string(cls, text: str) -> "Pubkey":
        """Parse a base58 address.

        Raises:
            ValueError: If the text is not base58 or does not decode to 32 bytes.
        """
        try:
            decoded = base58.b58decode(text.strip())
        except ValueError as e:
            raise ValueError(f"invalid base58 address: {text!r}") from e
        return cls(decoded)

    @classmethod
    def new_unique(cls) -> "Pubkey":
        """Deterministic, process-unique key for tests and fixtures."""
        n = next(_unique_counter)
        return cls(hashlib.sha256(b"unique:" + n.to_bytes(8, "little")).digest())

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return base58.b58encode(self.raw).decode("ascii")

    def __repr__(self) -> str:
        return f"Pubkey({self})"


SYSTEM_PROGRAM_ID = Pubkey(bytes(PUBKEY_LENGTH))


# ── Program-derived addresses ────────────────────────────────────────


def is_on_curve(raw: bytes) -> bool:
    """True if ``raw`` decompresses to a point on the Ed25519 curve."""
    y = int.from_bytes(raw, "little") & ((1 << 255) - 1)
    y %= _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return True
    # Euler's criterion: x2 must be a quadratic residue
    return pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """Hash seeds into an off-curve address owned by ``program_id``.

    Raises:
        ValueError: Too many or too long seeds, or the digest is on the curve.
    """
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"at most {MAX_SEEDS} seeds allowed")
    hasher = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"seed longer than {MAX_SEED_LENGTH} bytes")
        hasher.update(seed)
    hasher.update(program_id.raw)
    hasher.update(PDA_MARKER)
    digest = hasher.digest()
    if is_on_curve(digest):
        raise ValueError("derived address lies on the ed25519 curve")
    return Pubkey(digest)


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Search nonces 255..0 for the first off-curve address.

    Returns:
        (address, nonce): The canonical derived address and its nonce.
    """
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise ValueError("unable to find a viable program address nonce")


# ── Keypair ──────────────────────────────────────────────────────────


class Keypair:
    """Ed25519 signing key with its ledger identity."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self._private = private_key
        raw_public = private_key.public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
        self._pubkey = Pubkey(raw_public)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def from_secret_bytes(cls, secret: bytes) -> "Keypair":
        """Load from a 32-byte seed or a 64-byte seed+public blob."""
        if len(secret) not in (32, 64):
            raise ValueError("keypair secret must be 32 or 64 bytes")
        keypair = cls(ed25519.Ed25519PrivateKey.from_private_bytes(secret[:32]))
        if len(secret) == 64 and secret[32:] != keypair.pubkey().raw:
            raise ValueError("keypair public half does not match secret")
        return keypair

    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign(self, message: bytes) -> bytes:
        """Sign ``message``. Returns a 64-byte signature."""
        return self._private.sign(message)

    def to_bytes(self) -> bytes:
        seed = self._private.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        return seed + self._pubkey.raw


def verify_signature(pubkey: Pubkey, message: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature. Returns True if valid."""
    try:
        public = ed25519.Ed25519PublicKey.from_public_bytes(pubkey.raw)
        public.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


# ── Keypair files ────────────────────────────────────────────────────


def read_keypair_file(path: Union[str, Path]) -> Keypair:
    """Read a JSON array of 64 byte values (secret followed by public key)."""
    values: List[int] = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(values, list) or not all(isinstance(v, int) for v in values):
        raise ValueError(f"{path} is not a keypair file")
    return Keypair.from_secret_bytes(bytes(values))


def write_keypair_file(keypair: Keypair, path: Union[str, Path]) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(list(keypair.to_bytes())), encoding="utf-8")
    target.chmod(0o600)
    return target
