"""
Gateway program: pricing/limiting engine, record layouts, instruction set
and the dispatcher the ledger runs for every gateway instruction.
"""

from typing import Optional

from ..ledger.keys import Pubkey
from .errors import GatewayError, GatewayException, describe_error_code
from .instruction import (
    Consume,
    GatewayInstruction,
    InitializeGateway,
    InstructionDecodeError,
    RegisterConsumer,
    TopUp,
    pack,
    unpack,
)
from .logic import (
    ConsumeError,
    ConsumeOutcome,
    ConsumerRuntimeState,
    GatewayRules,
    apply_consume,
    can_charge,
    dynamic_price,
    enforce_quota_window,
    refill_bucket,
)
from .processor import process_instruction
from .state import (
    DEFAULT_PROGRAM_ID,
    ConsumerAccount,
    GatewayConfig,
    consumer_pda,
    gateway_pda,
)


def register_gateway_program(ledger, program_id: Optional[Pubkey] = None) -> Pubkey:
    """Install the gateway dispatcher on ``ledger``. Returns the program id used."""
    program_id = program_id or DEFAULT_PROGRAM_ID
    ledger.register_program(program_id, process_instruction)
    return program_id


__all__ = [
    "GatewayError",
    "GatewayException",
    "describe_error_code",
    "Consume",
    "GatewayInstruction",
    "InitializeGateway",
    "InstructionDecodeError",
    "RegisterConsumer",
    "TopUp",
    "pack",
    "unpack",
    "ConsumeError",
    "ConsumeOutcome",
    "ConsumerRuntimeState",
    "GatewayRules",
    "apply_consume",
    "can_charge",
    "dynamic_price",
    "enforce_quota_window",
    "refill_bucket",
    "process_instruction",
    "DEFAULT_PROGRAM_ID",
    "ConsumerAccount",
    "GatewayConfig",
    "consumer_pda",
    "gateway_pda",
    "register_gateway_program",
]
