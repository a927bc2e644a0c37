"""
Gateway program errors.

Codes are part of the external interface: clients and receipts see the
numeric value, so existing members must never be renumbered.
"""

from enum import IntEnum

from ..ledger.errors import CustomProgramError
from .logic import ConsumeError


class GatewayError(IntEnum):
    INVALID_INSTRUCTION = 0
    INVALID_ACCOUNT = 1
    UNAUTHORIZED = 2
    RATE_LIMITED = 3
    QUOTA_EXCEEDED = 4
    INSUFFICIENT_BALANCE = 5
    API_KEY_MISMATCH = 6
    ALREADY_INITIALIZED = 7

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    GatewayError.INVALID_INSTRUCTION: "invalid instruction",
    GatewayError.INVALID_ACCOUNT: "invalid account",
    GatewayError.UNAUTHORIZED: "unauthorized",
    GatewayError.RATE_LIMITED: "rate limited",
    GatewayError.QUOTA_EXCEEDED: "quota exceeded",
    GatewayError.INSUFFICIENT_BALANCE: "insufficient prepaid balance",
    GatewayError.API_KEY_MISMATCH: "key mismatch",
    GatewayError.ALREADY_INITIALIZED: "already initialized",
}


class GatewayException(CustomProgramError):
    """Gateway rejection carrying a stable GatewayError code"""

    def __init__(self, error: GatewayError):
        self.error = error
        super().__init__(int(error), error.description)

    @property
    def name(self) -> str:
        return "".join(part.capitalize() for part in self.error.name.split("_"))


_CONSUME_ERRORS = {
    ConsumeError.RATE_LIMITED: GatewayError.RATE_LIMITED,
    ConsumeError.QUOTA_EXCEEDED: GatewayError.QUOTA_EXCEEDED,
    ConsumeError.INSUFFICIENT_BALANCE: GatewayError.INSUFFICIENT_BALANCE,
}


def map_consume_error(err: ConsumeError) -> GatewayException:
    return GatewayException(_CONSUME_ERRORS[err])


def describe_error_code(code: int) -> str:
    """Human-readable text for a numeric gateway error code."""
    try:
        return GatewayError(code).description
    except ValueError:
        return f"unknown gateway error {code}"
