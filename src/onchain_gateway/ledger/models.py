"""
Ledger data models: stored accounts and transaction receipts.
"""

import base64
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .keys import SYSTEM_PROGRAM_ID, Pubkey


@dataclass
class Account:
    """Persisted state of one ledger address."""

    owner: Pubkey = SYSTEM_PROGRAM_ID
    lamports: int = 0
    data: bytes = b""

    def to_dict(self, address: Pubkey) -> Dict[str, Any]:
        return {
            "address": str(address),
            "owner": str(self.owner),
            "lamports": self.lamports,
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Account":
        return cls(
            owner=Pubkey.from_string(d["owner"]),
            lamports=int(d["lamports"]),
            data=base64.b64decode(d["data"]),
        )


@dataclass
class TransactionReceipt:
    """Outcome of one transaction as observed by the submitter."""

    signature: str
    ok: bool
    slot: int = 0
    unix_timestamp: int = 0
    error: Optional[Dict[str, Any]] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TransactionReceipt":
        return cls(
            signature=d["signature"],
            ok=bool(d["ok"]),
            slot=int(d.get("slot", 0)),
            unix_timestamp=int(d.get("unix_timestamp", 0)),
            error=d.get("error"),
            logs=list(d.get("logs") or []),
        )
