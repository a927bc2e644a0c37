# Ledger Account Store: SQLite-backed records keyed by address
#
# Opens its database through core.db.connect and holds one long-lived
# connection so an in-memory ledger survives between calls.
# All writes for one transaction go through commit(), which applies every
# account update and the receipt inside a single SQLite transaction.
#
# Lamports are u64 and can exceed SQLite's signed INTEGER range, so they
# are stored as decimal TEXT.

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from ..core.db import connect as db_connect
from .keys import Pubkey
from .models import Account, TransactionReceipt

logger = logging.getLogger(__name__)


class AccountStore:
    """Persistent map of address -> Account plus processed receipts.

    Args:
        db_path: Path to SQLite file. None keeps the ledger in memory.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else None
        self._lock = threading.Lock()
        self._conn = db_connect(self.db_path, row_factory=True, check_same_thread=False)
        self._init_database()

    def _init_database(self):
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    address TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    lamports TEXT NOT NULL,
                    data BLOB NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    signature TEXT PRIMARY KEY,
                    slot INTEGER NOT NULL,
                    unix_timestamp INTEGER NOT NULL,
                    logs TEXT NOT NULL,
                    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, address: Pubkey) -> Optional[Account]:
        """Load one account. Returns None if the address was never written."""
        with self._lock:
            row = self._conn.execute(
                "SELECT owner, lamports, data FROM accounts WHERE address = ?",
                (str(address),),
            ).fetchone()
        if row is None:
            return None
        return Account(
            owner=Pubkey.from_string(row["owner"]),
            lamports=int(row["lamports"]),
            data=bytes(row["data"]),
        )

    def get_receipt(self, signature: str) -> Optional[TransactionReceipt]:
        with self._lock:
            row = self._conn.execute(
                "SELECT signature, slot, unix_timestamp, logs FROM transactions WHERE signature = ?",
                (signature,),
            ).fetchone()
        if row is None:
            return None
        return TransactionReceipt(
            signature=row["signature"],
            ok=True,
            slot=row["slot"],
            unix_timestamp=row["unix_timestamp"],
            logs=json.loads(row["logs"]),
        )

    def has_transaction(self, signature: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM transactions WHERE signature = ?", (signature,)
            ).fetchone()
        return row is not None

    def total_lamports(self) -> int:
        with self._lock:
            rows = self._conn.execute("SELECT lamports FROM accounts").fetchall()
        return sum(int(r["lamports"]) for r in rows)

    # ── Writes ───────────────────────────────────────────────────────

    def commit(
        self,
        updates: Iterable[Tuple[Pubkey, Account]],
        receipt: Optional[TransactionReceipt] = None,
    ) -> None:
        """Write all account updates (and the receipt) as one atomic step.

        Raises:
            sqlite3.Error: Nothing is written when any statement fails.
        """
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (str(address), str(account.owner), str(account.lamports), account.data, now)
            for address, account in updates
        ]
        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(
                        """INSERT INTO accounts (address, owner, lamports, data, updated_at)
                           VALUES (?, ?, ?, ?, ?)
                           ON CONFLICT(address) DO UPDATE SET
                               owner = excluded.owner,
                               lamports = excluded.lamports,
                               data = excluded.data,
                               updated_at = excluded.updated_at""",
                        rows,
                    )
                    if receipt is not None:
                        self._conn.execute(
                            """INSERT INTO transactions (signature, slot, unix_timestamp, logs)
                               VALUES (?, ?, ?, ?)""",
                            (
                                receipt.signature,
                                receipt.slot,
                                receipt.unix_timestamp,
                                json.dumps(receipt.logs),
                            ),
                        )
            except sqlite3.Error:
                logger.error("Ledger commit failed; no accounts written", exc_info=True)
                raise

    def snapshot(self) -> Dict[str, Account]:
        """All accounts keyed by base58 address (diagnostics and tests)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT address, owner, lamports, data FROM accounts ORDER BY address"
            ).fetchall()
        return {
            r["address"]: Account(
                owner=Pubkey.from_string(r["owner"]),
                lamports=int(r["lamports"]),
                data=bytes(r["data"]),
            )
            for r in rows
        }
