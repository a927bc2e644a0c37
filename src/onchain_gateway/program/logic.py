# Gateway Program: Consumption Engine
#
# Pure, deterministic building blocks evaluated once per Consume:
#   1. refill_bucket()        token-bucket rate limit
#   2. enforce_quota_window() fixed-length quota period roll-over
#   3. dynamic_price()        utilization-based surge price
#   4. apply_consume()        all-or-nothing composition of 1-3 plus the
#                             balance-above-floor check
#
# Every function returns new values and never mutates its inputs, so a
# rejected consume leaves the caller's state exactly as it was.
#
# Integer domains mirror the on-ledger record layout: amounts and counters
# are u64, timestamps are i64. Python ints never wrap, so u64 saturation
# and checked addition are applied explicitly.

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

U64_MAX = 2**64 - 1
BPS_DENOMINATOR = 10_000


# ── u64 arithmetic ───────────────────────────────────────────────────


def saturating_add(a: int, b: int) -> int:
    return min(a + b, U64_MAX)


def saturating_mul(a: int, b: int) -> int:
    return min(a * b, U64_MAX)


def checked_add(a: int, b: int) -> Optional[int]:
    """u64 addition. Returns None on overflow."""
    total = a + b
    if total > U64_MAX:
        return None
    return total


# ── Data Model ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class BucketState:
    capacity: int
    tokens: int
    refill_per_second: int
    last_refill_ts: int


@dataclass(frozen=True)
class QuotaState:
    period_seconds: int
    period_start_ts: int
    period_limit: int
    remaining: int


@dataclass(frozen=True)
class GatewayRules:
    """Pricing and limiting rules fixed at gateway creation."""

    base_price_lamports: int
    max_surge_bps: int
    period_limit: int
    period_seconds: int
    bucket_capacity: int
    refill_per_second: int


@dataclass(frozen=True)
class ConsumerRuntimeState:
    """Per-consumer counters mutated by successful consumes."""

    bucket_tokens: int
    bucket_last_refill_ts: int
    quota_remaining: int
    quota_period_start_ts: int
    total_calls: int = 0
    total_spent_lamports: int = 0


class ConsumeError(str, Enum):
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass(frozen=True)
class ConsumeOutcome:
    """Result of one consume decision.

    On success ``charge`` is the amount to collect and ``state`` the
    committed counters. On rejection ``error`` is set, ``charge`` is 0 and
    ``state`` is the untouched input state.
    """

    state: ConsumerRuntimeState
    charge: int = 0
    error: Optional[ConsumeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ── Bucket / quota / price ───────────────────────────────────────────


def refill_bucket(bucket: BucketState, now_ts: int) -> BucketState:
    """Add elapsed * refill_per_second tokens, capped at capacity.

    A timestamp at or before the last refill changes nothing.
    """
    if now_ts <= bucket.last_refill_ts:
        return bucket

    elapsed = now_ts - bucket.last_refill_ts
    refill = saturating_mul(elapsed, bucket.refill_per_second)
    tokens = min(bucket.capacity, saturating_add(bucket.tokens, refill))
    return replace(bucket, tokens=tokens, last_refill_ts=now_ts)


def enforce_quota_window(quota: QuotaState, now_ts: int) -> QuotaState:
    """Start a fresh window at ``now_ts`` once the current one has expired.

    Skipped windows are not accrued: one reset, full limit, regardless of
    how long the consumer was idle. ``period_seconds <= 0`` disables rolling.
    """
    if quota.period_seconds <= 0:
        return quota

    if now_ts - quota.period_start_ts >= quota.period_seconds:
        return replace(quota, period_start_ts=now_ts, remaining=quota.period_limit)
    return quota


def dynamic_price(
    base_price_lamports: int,
    period_limit: int,
    remaining_quota: int,
    max_surge_bps: int,
) -> int:
    """Price one call from quota utilization.

    utilization_bps = used * 10000 / period_limit
    surge_bps       = utilization_bps * max_surge_bps / 10000
    price           = base * (10000 + surge_bps) / 10000

    Zero utilization prices at exactly ``base_price_lamports``; price never
    decreases as ``remaining_quota`` falls.
    """
    if period_limit == 0 or base_price_lamports == 0:
        return base_price_lamports

    capped_remaining = min(remaining_quota, period_limit)
    used = period_limit - capped_remaining
    utilization_bps = saturating_mul(used, BPS_DENOMINATOR) // period_limit
    surge_bps = saturating_mul(utilization_bps, max_surge_bps) // BPS_DENOMINATOR

    multiplier = saturating_add(BPS_DENOMINATOR, surge_bps)
    return saturating_mul(base_price_lamports, multiplier) // BPS_DENOMINATOR


def can_charge(available_balance: int, minimum_floor: int, charge_lamports: int) -> bool:
    """True if paying ``charge_lamports`` keeps the balance at or above the floor."""
    required = checked_add(minimum_floor, charge_lamports)
    if required is None:
        return False
    return available_balance >= required


# ── Consume ──────────────────────────────────────────────────────────


def apply_consume(
    rules: GatewayRules,
    state: ConsumerRuntimeState,
    now_ts: int,
    available_balance: int,
    minimum_floor: int,
) -> ConsumeOutcome:
    """Decide whether one API call may be charged, and for how much.

    Steps (any rejection returns the input ``state`` unchanged):
      1. bucket: refill to now, need one token (RATE_LIMITED)
      2. quota: roll window, need one call left (QUOTA_EXCEEDED)
      3. price from the post-decrement remaining quota
      4. balance must cover floor + price (INSUFFICIENT_BALANCE)
      5. commit staged bucket/quota fields and bump counters
    """
    next_state = state

    if rules.bucket_capacity > 0:
        bucket = refill_bucket(
            BucketState(
                capacity=rules.bucket_capacity,
                tokens=state.bucket_tokens,
                refill_per_second=rules.refill_per_second,
                last_refill_ts=state.bucket_last_refill_ts,
            ),
            now_ts,
        )
        if bucket.tokens == 0:
            return ConsumeOutcome(state=state, error=ConsumeError.RATE_LIMITED)

        next_state = replace(
            next_state,
            bucket_tokens=bucket.tokens - 1,
            bucket_last_refill_ts=bucket.last_refill_ts,
        )

    remaining_for_price = next_state.quota_remaining

    if rules.period_limit > 0:
        quota = enforce_quota_window(
            QuotaState(
                period_seconds=rules.period_seconds,
                period_start_ts=state.quota_period_start_ts,
                period_limit=rules.period_limit,
                remaining=state.quota_remaining,
            ),
            now_ts,
        )
        if quota.remaining == 0:
            return ConsumeOutcome(state=state, error=ConsumeError.QUOTA_EXCEEDED)

        remaining_for_price = quota.remaining - 1
        next_state = replace(
            next_state,
            quota_remaining=remaining_for_price,
            quota_period_start_ts=quota.period_start_ts,
        )

    price = dynamic_price(
        rules.base_price_lamports,
        rules.period_limit,
        remaining_for_price,
        rules.max_surge_bps,
    )

    if not can_charge(available_balance, minimum_floor, price):
        return ConsumeOutcome(state=state, error=ConsumeError.INSUFFICIENT_BALANCE)

    next_state = replace(
        next_state,
        total_calls=saturating_add(next_state.total_calls, 1),
        total_spent_lamports=saturating_add(next_state.total_spent_lamports, price),
    )
    return ConsumeOutcome(state=next_state, charge=price)
