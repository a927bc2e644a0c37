# Gateway Program: Instruction Set
#
# Closed set of four variants, encoded as a one-byte tag followed by
# fixed-width little-endian fields:
#
#   0 InitializeGateway  base_price u64, max_surge_bps u16, period_limit u64,
#                        period_seconds i64, bucket_capacity u64,
#                        refill_per_second u64
#   1 RegisterConsumer   api_key_id u64, api_key_hash [32]
#   2 TopUp              lamports u64
#   3 Consume            api_key_id u64, presented_api_key_hash [32]
#
# unpack() accepts only an exact-length payload with a known tag.

import struct
from dataclasses import astuple, dataclass
from typing import Dict, Type, Union


class InstructionDecodeError(ValueError):
    """Raised when an instruction payload is malformed."""


@dataclass(frozen=True)
class InitializeGateway:
    base_price_lamports: int
    max_surge_bps: int
    period_limit: int
    period_seconds: int
    bucket_capacity: int
    refill_per_second: int

    TAG = 0
    LAYOUT = struct.Struct("<QHQqQQ")


@dataclass(frozen=True)
class RegisterConsumer:
    api_key_id: int
    api_key_hash: bytes

    TAG = 1
    LAYOUT = struct.Struct("<Q32s")


@dataclass(frozen=True)
class TopUp:
    lamports: int

    TAG = 2
    LAYOUT = struct.Struct("<Q")


@dataclass(frozen=True)
class Consume:
    api_key_id: int
    presented_api_key_hash: bytes

    TAG = 3
    LAYOUT = struct.Struct("<Q32s")


GatewayInstruction = Union[InitializeGateway, RegisterConsumer, TopUp, Consume]

_VARIANTS: Dict[int, Type] = {
    variant.TAG: variant
    for variant in (InitializeGateway, RegisterConsumer, TopUp, Consume)
}


def pack(instruction: GatewayInstruction) -> bytes:
    """Encode an instruction.

    Raises:
        InstructionDecodeError: A field is outside its integer range or a
            hash is not 32 bytes.
    """
    fields = astuple(instruction)
    for value in fields:
        if isinstance(value, bytes) and len(value) != 32:
            raise InstructionDecodeError("hash fields must be 32 bytes")
    try:
        return bytes([instruction.TAG]) + instruction.LAYOUT.pack(*fields)
    except struct.error as e:
        raise InstructionDecodeError(str(e)) from e


def unpack(data: bytes) -> GatewayInstruction:
    """Decode an instruction payload.

    Raises:
        InstructionDecodeError: Empty payload, unknown tag, or wrong length.
    """
    if not data:
        raise InstructionDecodeError("empty instruction data")
    variant = _VARIANTS.get(data[0])
    if variant is None:
        raise InstructionDecodeError(f"unknown instruction tag {data[0]}")
    body = bytes(data[1:])
    if len(body) != variant.LAYOUT.size:
        raise InstructionDecodeError(
            f"{variant.__name__} expects {variant.LAYOUT.size} bytes, got {len(body)}"
        )
    return variant(*variant.LAYOUT.unpack(body))
