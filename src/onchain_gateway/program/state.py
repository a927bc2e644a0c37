# Gateway Program: Persisted Records
#
# Fixed-size little-endian layouts stored in account data:
#
#   GatewayConfig (140 bytes)
#     is_initialized u8 | admin 32 | treasury 32 | backend_signer 32 |
#     base_price u64 | max_surge_bps u16 | period_limit u64 |
#     period_seconds i64 | bucket_capacity u64 | refill_per_second u64 | bump u8
#
#   ConsumerAccount (154 bytes)
#     is_initialized u8 | gateway 32 | owner 32 | api_key_id u64 |
#     api_key_hash 32 | bucket_tokens u64 | bucket_last_refill_ts i64 |
#     quota_remaining u64 | quota_period_start_ts i64 | total_calls u64 |
#     total_spent u64 | bump u8
#
# Addresses: gateway = PDA("gateway", admin),
#            consumer = PDA("consumer", gateway, owner, u64_le(api_key_id)).

import hashlib
import struct
from dataclasses import dataclass
from typing import Tuple

from ..ledger.keys import Pubkey, create_program_address, find_program_address
from .logic import ConsumerRuntimeState, GatewayRules

DEFAULT_PROGRAM_ID = Pubkey(hashlib.sha256(b"onchain_gateway").digest())

GATEWAY_SEED = b"gateway"
CONSUMER_SEED = b"consumer"
API_KEY_HASH_LENGTH = 32

_GATEWAY_LAYOUT = struct.Struct("<B32s32s32sQHQqQQB")
_CONSUMER_LAYOUT = struct.Struct("<B32s32sQ32sQqQqQQB")


class LayoutError(ValueError):
    """Raised when account data does not match a record layout."""


def _init_flag(raw: int) -> bool:
    if raw not in (0, 1):
        raise LayoutError(f"invalid init flag {raw}")
    return raw == 1


@dataclass
class GatewayConfig:
    is_initialized: bool
    admin: Pubkey
    treasury: Pubkey
    backend_signer: Pubkey
    base_price_lamports: int
    max_surge_bps: int
    period_limit: int
    period_seconds: int
    bucket_capacity: int
    refill_per_second: int
    bump: int

    LEN = _GATEWAY_LAYOUT.size

    def rules(self) -> GatewayRules:
        return GatewayRules(
            base_price_lamports=self.base_price_lamports,
            max_surge_bps=self.max_surge_bps,
            period_limit=self.period_limit,
            period_seconds=self.period_seconds,
            bucket_capacity=self.bucket_capacity,
            refill_per_second=self.refill_per_second,
        )

    def pack(self) -> bytes:
        return _GATEWAY_LAYOUT.pack(
            int(self.is_initialized),
            self.admin.raw,
            self.treasury.raw,
            self.backend_signer.raw,
            self.base_price_lamports,
            self.max_surge_bps,
            self.period_limit,
            self.period_seconds,
            self.bucket_capacity,
            self.refill_per_second,
            self.bump,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "GatewayConfig":
        """Decode account data.

        Raises:
            LayoutError: Wrong length or malformed init flag.
        """
        if len(data) != cls.LEN:
            raise LayoutError(f"gateway record must be {cls.LEN} bytes, got {len(data)}")
        fields = _GATEWAY_LAYOUT.unpack(bytes(data))
        return cls(
            _init_flag(fields[0]),
            Pubkey(fields[1]),
            Pubkey(fields[2]),
            Pubkey(fields[3]),
            *fields[4:],
        )


@dataclass
class ConsumerAccount:
    is_initialized: bool
    gateway: Pubkey
    owner: Pubkey
    api_key_id: int
    api_key_hash: bytes
    bucket_tokens: int
    bucket_last_refill_ts: int
    quota_remaining: int
    quota_period_start_ts: int
    total_calls: int
    total_spent_lamports: int
    bump: int

    LEN = _CONSUMER_LAYOUT.size

    def runtime_state(self) -> ConsumerRuntimeState:
        return ConsumerRuntimeState(
            bucket_tokens=self.bucket_tokens,
            bucket_last_refill_ts=self.bucket_last_refill_ts,
            quota_remaining=self.quota_remaining,
            quota_period_start_ts=self.quota_period_start_ts,
            total_calls=self.total_calls,
            total_spent_lamports=self.total_spent_lamports,
        )

    def apply_runtime_state(self, runtime: ConsumerRuntimeState) -> None:
        self.bucket_tokens = runtime.bucket_tokens
        self.bucket_last_refill_ts = runtime.bucket_last_refill_ts
        self.quota_remaining = runtime.quota_remaining
        self.quota_period_start_ts = runtime.quota_period_start_ts
        self.total_calls = runtime.total_calls
        self.total_spent_lamports = runtime.total_spent_lamports

    def pack(self) -> bytes:
        return _CONSUMER_LAYOUT.pack(
            int(self.is_initialized),
            self.gateway.raw,
            self.owner.raw,
            self.api_key_id,
            self.api_key_hash,
            self.bucket_tokens,
            self.bucket_last_refill_ts,
            self.quota_remaining,
            self.quota_period_start_ts,
            self.total_calls,
            self.total_spent_lamports,
            self.bump,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "ConsumerAccount":
        """Decode account data.

        Raises:
            LayoutError: Wrong length or malformed init flag.
        """
        if len(data) != cls.LEN:
            raise LayoutError(f"consumer record must be {cls.LEN} bytes, got {len(data)}")
        fields = _CONSUMER_LAYOUT.unpack(bytes(data))
        return cls(
            _init_flag(fields[0]),
            Pubkey(fields[1]),
            Pubkey(fields[2]),
            *fields[3:],
        )


# ── Address derivation ───────────────────────────────────────────────


def gateway_seeds(admin: Pubkey) -> list:
    return [GATEWAY_SEED, admin.raw]


def consumer_seeds(gateway: Pubkey, owner: Pubkey, api_key_id: int) -> list:
    return [CONSUMER_SEED, gateway.raw, owner.raw, api_key_id.to_bytes(8, "little")]


def gateway_pda(admin: Pubkey, program_id: Pubkey) -> Tuple[Pubkey, int]:
    return find_program_address(gateway_seeds(admin), program_id)


def consumer_pda(
    gateway: Pubkey, owner: Pubkey, api_key_id: int, program_id: Pubkey
) -> Tuple[Pubkey, int]:
    return find_program_address(consumer_seeds(gateway, owner, api_key_id), program_id)


def gateway_address_matches(cfg: GatewayConfig, address: Pubkey, program_id: Pubkey) -> bool:
    """Re-derive a stored gateway's address from its admin and nonce."""
    try:
        derived = create_program_address([*gateway_seeds(cfg.admin), bytes([cfg.bump])], program_id)
    except ValueError:
        return False
    return derived == address


def consumer_address_matches(consumer: ConsumerAccount, address: Pubkey, program_id: Pubkey) -> bool:
    """Re-derive a stored consumer's address from its identity and nonce."""
    seeds = consumer_seeds(consumer.gateway, consumer.owner, consumer.api_key_id)
    try:
        derived = create_program_address([*seeds, bytes([consumer.bump])], program_id)
    except ValueError:
        return False
    return derived == address
