"""
Local ledger host for the gateway program.

Provides what a shared ledger normally supplies: identities and derived
addresses, signed transactions, clock and rent services, a system program,
an account store, and all-or-nothing transaction execution.
"""

from .keys import (
    SYSTEM_PROGRAM_ID,
    Keypair,
    Pubkey,
    create_program_address,
    find_program_address,
    read_keypair_file,
    write_keypair_file,
)
from .models import Account, TransactionReceipt
from .runtime import AccountInfo, InvokeContext, Ledger
from .store import AccountStore
from .sysvars import Clock, ClockService, ManualClock, Rent
from .transaction import AccountMeta, Instruction, Transaction

__all__ = [
    "SYSTEM_PROGRAM_ID",
    "Keypair",
    "Pubkey",
    "create_program_address",
    "find_program_address",
    "read_keypair_file",
    "write_keypair_file",
    "Account",
    "TransactionReceipt",
    "AccountInfo",
    "InvokeContext",
    "Ledger",
    "AccountStore",
    "Clock",
    "ClockService",
    "ManualClock",
    "Rent",
    "AccountMeta",
    "Instruction",
    "Transaction",
]
