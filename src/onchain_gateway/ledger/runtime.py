# Ledger Runtime: executes signed transactions against the account store
#
# Single writer: transactions run one at a time under a lock. Each run
# works on staged copies of the accounts it references; the copies are
# written back in one AccountStore.commit() only after every instruction
# succeeded and every runtime invariant held. Any exception discards them.
#
# Runtime invariants, checked after each instruction and around every
# system-program call:
#   - accounts passed read-only are unchanged
#   - only the owning program may debit lamports or rewrite data
#   - total lamports across the touched accounts are conserved

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from .errors import (
    AccountAlreadyInUse,
    ArithmeticOverflow,
    DuplicateTransaction,
    ExternalAccountModified,
    InsufficientFunds,
    InvalidArgument,
    InvalidSeeds,
    MissingRequiredSignature,
    ProgramError,
    ReadonlyAccountModified,
    SignatureFailure,
    TransactionError,
    UnbalancedInstruction,
    UnknownProgram,
)
from .keys import SYSTEM_PROGRAM_ID, Pubkey, create_program_address
from .models import Account, TransactionReceipt
from .store import AccountStore
from .sysvars import Clock, ClockService, Rent
from .transaction import Transaction

logger = logging.getLogger(__name__)

U64_MAX = 2**64 - 1
MAX_RECENT_FAILURES = 1000


# ── Staged accounts ──────────────────────────────────────────────────


class AccountInfo:
    """Mutable staged view of one account inside a running transaction.

    ``is_signer`` and ``is_writable`` reflect the transaction's account
    metas. Programs change ``lamports`` and ``data`` in place; nothing
    reaches the store until the whole transaction succeeds.
    """

    def __init__(self, key: Pubkey, account: Account, is_signer: bool, is_writable: bool):
        self.key = key
        self.owner = account.owner
        self.lamports = account.lamports
        self.data = bytearray(account.data)
        self.is_signer = is_signer
        self.is_writable = is_writable

    def data_len(self) -> int:
        return len(self.data)

    def to_account(self) -> Account:
        return Account(owner=self.owner, lamports=self.lamports, data=bytes(self.data))

    def __repr__(self) -> str:
        return f"AccountInfo({self.key}, owner={self.owner}, lamports={self.lamports})"


@dataclass(frozen=True)
class _Snapshot:
    owner: Pubkey
    lamports: int
    data: bytes


ProgramEntrypoint = Callable[[Pubkey, List[AccountInfo], bytes, "InvokeContext"], None]


# ── Invoke context ───────────────────────────────────────────────────


class InvokeContext:
    """Host services available to a program for one instruction.

    Provides the clock and rent sysvars, a log sink, and the system
    program operations (create_account, transfer).
    """

    def __init__(self, program_id: Pubkey, accounts: Sequence[AccountInfo], clock: Clock, rent: Rent):
        self.program_id = program_id
        self.clock = clock
        self.rent = rent
        self.logs: List[str] = []
        self._accounts = list(accounts)
        self._snapshots: Dict[Pubkey, _Snapshot] = {}
        self.take_snapshot()

    def log(self, message: str) -> None:
        self.logs.append(f"Program log: {message}")
        logger.debug("program %s: %s", self.program_id, message)

    # ── invariant bookkeeping ────────────────────────────────────────

    def take_snapshot(self) -> None:
        self._snapshots = {
            info.key: _Snapshot(info.owner, info.lamports, bytes(info.data))
            for info in self._accounts
        }

    def verify(self) -> None:
        """Check the program's own changes since the last snapshot."""
        before_total = sum(s.lamports for s in self._snapshots.values())
        after_total = 0
        seen = set()
        for info in self._accounts:
            if info.key in seen:
                continue
            seen.add(info.key)
            snap = self._snapshots[info.key]
            after_total += info.lamports
            changed = (
                info.lamports != snap.lamports
                or bytes(info.data) != snap.data
                or info.owner != snap.owner
            )
            if changed and not info.is_writable:
                raise ReadonlyAccountModified(f"{info.key} is read-only")
            if info.owner != snap.owner:
                raise ExternalAccountModified(f"{info.key} owner changed outside the system program")
            if info.lamports < snap.lamports and snap.owner != self.program_id:
                raise ExternalAccountModified(f"{info.key} debited by non-owner")
            if bytes(info.data) != snap.data and snap.owner != self.program_id:
                raise ExternalAccountModified(f"{info.key} data modified by non-owner")
            if info.lamports < 0 or info.lamports > U64_MAX:
                raise ArithmeticOverflow(f"{info.key} balance out of range")
        if before_total != after_total:
            raise UnbalancedInstruction()

    # ── system program ───────────────────────────────────────────────

    def _require_signed(self, info: AccountInfo, signer_seeds: Optional[Sequence[bytes]]) -> None:
        if info.is_signer:
            return
        if signer_seeds is None:
            raise MissingRequiredSignature(f"{info.key} must sign")
        try:
            derived = create_program_address(signer_seeds, self.program_id)
        except ValueError as e:
            raise InvalidSeeds(str(e)) from e
        if derived != info.key:
            raise InvalidSeeds(f"seeds do not derive {info.key}")

    def create_account(
        self,
        payer: AccountInfo,
        new_account: AccountInfo,
        lamports: int,
        space: int,
        owner: Pubkey,
        signer_seeds: Optional[Sequence[bytes]] = None,
    ) -> None:
        """Fund, allocate and assign a fresh account.

        ``new_account`` must sign, or ``signer_seeds`` must derive its
        address under the calling program.
        """
        self.verify()
        self._require_signed(payer, None)
        self._require_signed(new_account, signer_seeds)
        if not (payer.is_writable and new_account.is_writable):
            raise ReadonlyAccountModified("create_account needs writable accounts")
        if new_account.lamports > 0 or new_account.data_len() > 0 or new_account.owner != SYSTEM_PROGRAM_ID:
            raise AccountAlreadyInUse(f"{new_account.key} already in use")
        if payer.owner != SYSTEM_PROGRAM_ID or payer.data_len() > 0:
            raise InvalidArgument(f"{payer.key} cannot pay: not a plain system account")
        if payer.lamports < lamports:
            raise InsufficientFunds(f"{payer.key} has {payer.lamports}, needs {lamports}")
        payer.lamports -= lamports
        new_account.lamports += lamports
        new_account.data = bytearray(space)
        new_account.owner = owner
        self.take_snapshot()

    def transfer(self, source: AccountInfo, destination: AccountInfo, lamports: int) -> None:
        """Move lamports out of a signing system account."""
        self.verify()
        self._require_signed(source, None)
        if not (source.is_writable and destination.is_writable):
            raise ReadonlyAccountModified("transfer needs writable accounts")
        if source.owner != SYSTEM_PROGRAM_ID or source.data_len() > 0:
            raise InvalidArgument(f"{source.key} is not a plain system account")
        if source.lamports < lamports:
            raise InsufficientFunds(f"{source.key} has {source.lamports}, needs {lamports}")
        if destination.lamports + lamports > U64_MAX:
            raise ArithmeticOverflow(f"{destination.key} balance would overflow")
        source.lamports -= lamports
        destination.lamports += lamports
        self.take_snapshot()


# ── Ledger ───────────────────────────────────────────────────────────


class Ledger:
    """Applies transactions to an AccountStore with all-or-nothing semantics.

    Args:
        store: Backing AccountStore.
        clock: Clock service (defaults to wall clock).
        rent: Rent parameters.
    """

    def __init__(
        self,
        store: Optional[AccountStore] = None,
        clock: Optional[ClockService] = None,
        rent: Optional[Rent] = None,
    ):
        self.store = store or AccountStore()
        self.clock = clock or ClockService()
        self.rent = rent or Rent()
        self._programs: Dict[Pubkey, ProgramEntrypoint] = {}
        self._lock = threading.Lock()
        self._recent_failures: "OrderedDict[str, TransactionReceipt]" = OrderedDict()

    def register_program(self, program_id: Pubkey, entrypoint: ProgramEntrypoint) -> None:
        self._programs[program_id] = entrypoint

    def get_account(self, address: Pubkey) -> Optional[Account]:
        return self.store.get(address)

    def get_balance(self, address: Pubkey) -> int:
        account = self.store.get(address)
        return account.lamports if account else 0

    def get_receipt(self, signature: str) -> Optional[TransactionReceipt]:
        receipt = self.store.get_receipt(signature)
        if receipt is None:
            receipt = self._recent_failures.get(signature)
        return receipt

    # ── faucet ───────────────────────────────────────────────────────

    def airdrop(self, address: Pubkey, lamports: int) -> TransactionReceipt:
        """Mint lamports into a system account (local and test ledgers)."""
        if lamports <= 0:
            raise ValueError("airdrop amount must be positive")
        with self._lock:
            account = self.store.get(address) or Account()
            clock = self.clock.now()
            signature = f"airdrop-{clock.slot}-{address}"
            if account.lamports + lamports > U64_MAX:
                receipt = TransactionReceipt(
                    signature=signature,
                    ok=False,
                    slot=clock.slot,
                    unix_timestamp=clock.unix_timestamp,
                    error=ArithmeticOverflow().to_dict(),
                )
                self._remember_failure(receipt)
                return receipt
            account.lamports += lamports
            receipt = TransactionReceipt(
                signature=signature,
                ok=True,
                slot=clock.slot,
                unix_timestamp=clock.unix_timestamp,
                logs=[f"airdrop {lamports} to {address}"],
            )
            self.store.commit([(address, account)], receipt)
        get_audit_logger().log_event(
            event_type=EventType.AIRDROP,
            severity=EventSeverity.INFO,
            message=f"Airdropped {lamports} lamports",
            details={"address": str(address), "lamports": lamports},
        )
        return receipt

    # ── transactions ─────────────────────────────────────────────────

    def process_transaction(self, tx: Transaction) -> TransactionReceipt:
        """Verify, execute and commit one transaction.

        Never raises for rejected transactions: the returned receipt
        carries the error and nothing is written.
        """
        try:
            signature = tx.signature
        except ValueError:
            signature = ""

        with self._lock:
            clock = self.clock.now()
            logs: List[str] = []
            try:
                self._precheck(tx, signature)
                staged = self._execute(tx, clock, logs)
                receipt = TransactionReceipt(
                    signature=signature,
                    ok=True,
                    slot=clock.slot,
                    unix_timestamp=clock.unix_timestamp,
                    logs=logs,
                )
                self.store.commit(
                    [(key, info.to_account()) for key, info in staged.items()],
                    receipt,
                )
            except (ProgramError, TransactionError) as e:
                receipt = TransactionReceipt(
                    signature=signature,
                    ok=False,
                    slot=clock.slot,
                    unix_timestamp=clock.unix_timestamp,
                    error=e.to_dict(),
                    logs=logs,
                )
                self._remember_failure(receipt)

        self._audit(receipt)
        return receipt

    def _precheck(self, tx: Transaction, signature: str) -> None:
        if not signature or not tx.verify():
            raise SignatureFailure("missing or invalid signature")
        if self.store.has_transaction(signature):
            raise DuplicateTransaction(f"{signature} already processed")
        for ix in tx.instructions:
            if ix.program_id not in self._programs:
                raise UnknownProgram(f"no program at {ix.program_id}")

    def _execute(self, tx: Transaction, clock: Clock, logs: List[str]) -> Dict[Pubkey, AccountInfo]:
        """Run every instruction on staged copies.

        Returns:
            The staged accounts that any instruction marked writable.
        """
        signed = set(tx.signers())
        staged: Dict[Pubkey, AccountInfo] = {}
        writable_any = set()
        for ix in tx.instructions:
            for meta in ix.accounts:
                if meta.pubkey not in staged:
                    account = self.store.get(meta.pubkey) or Account()
                    staged[meta.pubkey] = AccountInfo(meta.pubkey, account, meta.pubkey in signed, False)
                if meta.is_writable:
                    writable_any.add(meta.pubkey)

        for ix in tx.instructions:
            writable = {meta.pubkey for meta in ix.accounts if meta.is_writable}
            infos = [staged[meta.pubkey] for meta in ix.accounts]
            for info in infos:
                info.is_writable = info.key in writable
            ctx = InvokeContext(ix.program_id, infos, clock, self.rent)
            try:
                self._programs[ix.program_id](ix.program_id, infos, ix.data, ctx)
                ctx.verify()
            finally:
                logs.extend(ctx.logs)
        return {key: staged[key] for key in writable_any}

    def _remember_failure(self, receipt: TransactionReceipt) -> None:
        if not receipt.signature:
            return
        self._recent_failures[receipt.signature] = receipt
        while len(self._recent_failures) > MAX_RECENT_FAILURES:
            self._recent_failures.popitem(last=False)

    def _audit(self, receipt: TransactionReceipt) -> None:
        audit = get_audit_logger()
        if receipt.ok:
            audit.log_event(
                event_type=EventType.TX_PROCESSED,
                severity=EventSeverity.INFO,
                message=f"Transaction {receipt.signature} processed",
                details={"signature": receipt.signature, "slot": receipt.slot, "logs": receipt.logs},
            )
        else:
            audit.log_event(
                event_type=EventType.TX_REJECTED,
                severity=EventSeverity.WARNING,
                message=f"Transaction rejected: {receipt.error['message']}",
                details={"signature": receipt.signature, "slot": receipt.slot, "error": receipt.error},
            )
