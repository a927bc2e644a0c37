# Ledger Transactions: instructions, account metas, Ed25519 signatures
#
# The signed message is the canonical JSON of every field except the
# signatures themselves (sorted keys, no whitespace), prefixed with a
# domain separation string. The transaction id is the base58 signature
# of the first signer.

import base64
import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import base58

from .keys import Keypair, Pubkey, verify_signature

MESSAGE_DOMAIN = "onchain-gateway:tx:v1"


@dataclass(frozen=True)
class AccountMeta:
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": str(self.pubkey),
            "is_signer": self.is_signer,
            "is_writable": self.is_writable,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AccountMeta":
        return cls(
            pubkey=Pubkey.from_string(d["pubkey"]),
            is_signer=bool(d.get("is_signer", False)),
            is_writable=bool(d.get("is_writable", False)),
        )


@dataclass(frozen=True)
class Instruction:
    """One program invocation: target program, ordered accounts, payload."""

    program_id: Pubkey
    accounts: Sequence[AccountMeta]
    data: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_id": str(self.program_id),
            "accounts": [meta.to_dict() for meta in self.accounts],
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Instruction":
        return cls(
            program_id=Pubkey.from_string(d["program_id"]),
            accounts=tuple(AccountMeta.from_dict(a) for a in d["accounts"]),
            data=base64.b64decode(d["data"], validate=True),
        )


@dataclass
class Transaction:
    """A batch of instructions applied atomically by the ledger."""

    instructions: List[Instruction]
    nonce: str = field(default_factory=lambda: secrets.token_hex(16))
    signatures: Dict[str, bytes] = field(default_factory=dict)

    def signers(self) -> List[Pubkey]:
        """Accounts flagged as signers, in first-seen order."""
        seen: List[Pubkey] = []
        for ix in self.instructions:
            for meta in ix.accounts:
                if meta.is_signer and meta.pubkey not in seen:
                    seen.append(meta.pubkey)
        return seen

    def message_bytes(self) -> bytes:
        signable = {
            "instructions": [ix.to_dict() for ix in self.instructions],
            "nonce": self.nonce,
        }
        canonical = json.dumps(signable, sort_keys=True, separators=(",", ":"))
        return f"{MESSAGE_DOMAIN}:{canonical}".encode("utf-8")

    def sign(self, *keypairs: Keypair) -> "Transaction":
        message = self.message_bytes()
        for keypair in keypairs:
            self.signatures[str(keypair.pubkey())] = keypair.sign(message)
        return self

    def verify(self) -> bool:
        """True if every required signer has a valid signature."""
        required = self.signers()
        if not required:
            return False
        message = self.message_bytes()
        for signer in required:
            signature = self.signatures.get(str(signer))
            if signature is None or not verify_signature(signer, message, signature):
                return False
        return True

    @property
    def signature(self) -> str:
        """Transaction id: base58 signature of the first signer."""
        signers = self.signers()
        if not signers or str(signers[0]) not in self.signatures:
            raise ValueError("transaction is not signed")
        return base58.b58encode(self.signatures[str(signers[0])]).decode("ascii")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instructions": [ix.to_dict() for ix in self.instructions],
            "nonce": self.nonce,
            "signatures": {
                key: base58.b58encode(sig).decode("ascii")
                for key, sig in self.signatures.items()
            },
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        """Decode the JSON wire form.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed.
        """
        return cls(
            instructions=[Instruction.from_dict(ix) for ix in d["instructions"]],
            nonce=str(d["nonce"]),
            signatures={
                key: base58.b58decode(sig) for key, sig in d.get("signatures", {}).items()
            },
        )
