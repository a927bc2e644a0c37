"""
Ledger error classes.

ProgramError and its subclasses abort the instruction that raised them;
TransactionError aborts a transaction before any program runs. Both stop
at the ledger boundary, which turns them into a failed receipt.
"""

from typing import Any, Dict, Optional


class ProgramError(Exception):
    """Base exception for a failed instruction"""

    kind = "program"
    code: Optional[int] = None

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "code": self.code,
            "message": self.message,
        }


class NotEnoughAccountKeys(ProgramError):
    """Raised when an instruction lists fewer accounts than it needs"""


class MissingRequiredSignature(ProgramError):
    """Raised when a host operation needs a signature that is absent"""


class InsufficientFunds(ProgramError):
    """Raised when a system transfer exceeds the source balance"""


class AccountAlreadyInUse(ProgramError):
    """Raised when creating an account that already holds lamports or data"""


class InvalidArgument(ProgramError):
    """Raised when a system operation gets an unusable account"""


class InvalidSeeds(ProgramError):
    """Raised when signer seeds do not derive the target address"""


class ArithmeticOverflow(ProgramError):
    """Raised when a balance would exceed the u64 range"""


class ReadonlyAccountModified(ProgramError):
    """Raised when an account passed read-only was changed"""


class ExternalAccountModified(ProgramError):
    """Raised when a program debits or rewrites an account it does not own"""


class UnbalancedInstruction(ProgramError):
    """Raised when an instruction creates or destroys lamports"""


class CustomProgramError(ProgramError):
    """Program-defined failure identified by a stable numeric code"""

    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"custom program error 0x{code:x}")

    @property
    def name(self) -> str:
        return f"Custom({self.code})"


class TransactionError(Exception):
    """Base exception for a transaction rejected before execution"""

    kind = "transaction"

    def __init__(self, message: Optional[str] = None):
        self.message = message or type(self).__name__
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": type(self).__name__,
            "code": None,
            "message": self.message,
        }


class SignatureFailure(TransactionError):
    """Raised when a required signature is missing or invalid"""


class DuplicateTransaction(TransactionError):
    """Raised when a transaction id was already processed"""


class UnknownProgram(TransactionError):
    """Raised when an instruction targets a program the ledger does not run"""
