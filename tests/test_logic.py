"""
Tests for the consumption engine: bucket refill, quota window, dynamic
pricing, balance floor and the all-or-nothing apply_consume.
"""

import pytest

from onchain_gateway.program.logic import (
    U64_MAX,
    BucketState,
    ConsumeError,
    ConsumerRuntimeState,
    GatewayRules,
    QuotaState,
    apply_consume,
    can_charge,
    checked_add,
    dynamic_price,
    enforce_quota_window,
    refill_bucket,
    saturating_add,
    saturating_mul,
)


# ===================================================================
# Helpers
# ===================================================================


def _make_rules(**overrides) -> GatewayRules:
    values = dict(
        base_price_lamports=1_000,
        max_surge_bps=2_000,
        period_limit=100,
        period_seconds=60,
        bucket_capacity=10,
        refill_per_second=2,
    )
    values.update(overrides)
    return GatewayRules(**values)


def _make_state(**overrides) -> ConsumerRuntimeState:
    values = dict(
        bucket_tokens=5,
        bucket_last_refill_ts=100,
        quota_remaining=100,
        quota_period_start_ts=100,
        total_calls=0,
        total_spent_lamports=0,
    )
    values.update(overrides)
    return ConsumerRuntimeState(**values)


# ===================================================================
# TestU64Arithmetic
# ===================================================================


class TestU64Arithmetic:
    def test_saturating_add_clamps(self):
        assert saturating_add(U64_MAX, 1) == U64_MAX
        assert saturating_add(2, 3) == 5

    def test_saturating_mul_clamps(self):
        assert saturating_mul(2**63, 4) == U64_MAX

    def test_checked_add_overflow_is_none(self):
        assert checked_add(U64_MAX, 1) is None
        assert checked_add(U64_MAX - 1, 1) == U64_MAX


# ===================================================================
# TestBucketRefill
# ===================================================================


class TestBucketRefill:
    def test_refills_and_caps_at_capacity(self):
        bucket = BucketState(capacity=10, tokens=1, refill_per_second=3, last_refill_ts=100)
        refilled = refill_bucket(bucket, 103)
        assert refilled.tokens == 10
        assert refilled.last_refill_ts == 103

    def test_partial_refill(self):
        bucket = BucketState(capacity=10, tokens=1, refill_per_second=2, last_refill_ts=100)
        refilled = refill_bucket(bucket, 102)
        assert refilled.tokens == 5

    def test_same_timestamp_is_noop(self):
        bucket = BucketState(capacity=10, tokens=1, refill_per_second=3, last_refill_ts=100)
        assert refill_bucket(bucket, 100) == bucket

    def test_clock_behind_is_noop(self):
        """A timestamp before the last refill never moves the bucket backwards."""
        bucket = BucketState(capacity=10, tokens=1, refill_per_second=3, last_refill_ts=100)
        assert refill_bucket(bucket, 50) == bucket

    def test_huge_elapsed_saturates_without_error(self):
        bucket = BucketState(capacity=10, tokens=0, refill_per_second=U64_MAX, last_refill_ts=0)
        assert refill_bucket(bucket, 2**62).tokens == 10

    def test_input_not_mutated(self):
        bucket = BucketState(capacity=10, tokens=1, refill_per_second=3, last_refill_ts=100)
        refill_bucket(bucket, 103)
        assert bucket.tokens == 1


# ===================================================================
# TestQuotaWindow
# ===================================================================


class TestQuotaWindow:
    def test_rolls_over_after_window(self):
        quota = QuotaState(period_seconds=60, period_start_ts=0, period_limit=100, remaining=0)
        rolled = enforce_quota_window(quota, 61)
        assert rolled.period_start_ts == 61
        assert rolled.remaining == 100

    def test_rolls_exactly_at_boundary(self):
        quota = QuotaState(period_seconds=60, period_start_ts=0, period_limit=100, remaining=3)
        assert enforce_quota_window(quota, 60).remaining == 100

    def test_inside_window_unchanged(self):
        quota = QuotaState(period_seconds=60, period_start_ts=0, period_limit=100, remaining=3)
        assert enforce_quota_window(quota, 59) == quota

    def test_non_positive_period_never_rolls(self):
        quota = QuotaState(period_seconds=0, period_start_ts=0, period_limit=100, remaining=0)
        assert enforce_quota_window(quota, 10**9) == quota

    def test_skipped_windows_not_accrued(self):
        """Long idle time yields one fresh window, not several limits."""
        quota = QuotaState(period_seconds=60, period_start_ts=0, period_limit=100, remaining=0)
        rolled = enforce_quota_window(quota, 60 * 50 + 7)
        assert rolled.remaining == 100
        assert rolled.period_start_ts == 60 * 50 + 7


# ===================================================================
# TestDynamicPrice
# ===================================================================


class TestDynamicPrice:
    def test_rises_with_utilization(self):
        low_util = dynamic_price(1_000, 100, 90, 5_000)
        high_util = dynamic_price(1_000, 100, 10, 5_000)
        assert low_util == 1_050
        assert high_util == 1_450
        assert high_util > low_util

    def test_zero_utilization_is_base(self):
        assert dynamic_price(1_000, 100, 100, 5_000) == 1_000

    def test_full_utilization_with_full_surge_doubles(self):
        assert dynamic_price(1_000, 100, 0, 10_000) == 2_000

    def test_unlimited_period_returns_base(self):
        assert dynamic_price(1_000, 0, 0, 10_000) == 1_000

    def test_zero_base_is_free(self):
        assert dynamic_price(0, 100, 0, 10_000) == 0

    def test_remaining_above_limit_is_capped(self):
        assert dynamic_price(1_000, 100, 500, 5_000) == 1_000

    def test_monotonic_in_remaining(self):
        prices = [dynamic_price(1_000, 100, remaining, 3_000) for remaining in range(100, -1, -1)]
        assert prices == sorted(prices)

    def test_saturates_instead_of_overflowing(self):
        # base * multiplier clamps to u64 before the final division
        assert dynamic_price(U64_MAX, 1, 0, 65_535) == U64_MAX // 10_000


# ===================================================================
# TestCanCharge
# ===================================================================


class TestCanCharge:
    def test_checks_post_floor_balance(self):
        assert can_charge(2_000_000, 1_000_000, 500_000) is True
        assert can_charge(1_400_000, 1_000_000, 500_000) is False

    def test_exact_floor_plus_charge_allowed(self):
        assert can_charge(1_500_000, 1_000_000, 500_000) is True

    def test_overflowing_requirement_rejected(self):
        assert can_charge(U64_MAX, U64_MAX, 1) is False


# ===================================================================
# TestApplyConsume
# ===================================================================


class TestApplyConsume:
    def test_updates_counters_and_charges(self):
        outcome = apply_consume(_make_rules(), _make_state(), 101, 5_000_000, 1_000_000)
        assert outcome.ok
        assert outcome.charge == 1_002
        assert outcome.state.quota_remaining == 99
        assert outcome.state.bucket_tokens == 6
        assert outcome.state.bucket_last_refill_ts == 101
        assert outcome.state.total_calls == 1
        assert outcome.state.total_spent_lamports == outcome.charge

    def test_rate_limited_when_bucket_empty(self):
        rules = _make_rules(bucket_capacity=1, refill_per_second=0)
        state = _make_state(bucket_tokens=0)
        outcome = apply_consume(rules, state, 101, 5_000_000, 1_000_000)
        assert outcome.error == ConsumeError.RATE_LIMITED
        assert outcome.charge == 0
        assert outcome.state == state

    def test_quota_exceeded_inside_window(self):
        state = _make_state(quota_remaining=0)
        outcome = apply_consume(_make_rules(), state, 101, 5_000_000, 1_000_000)
        assert outcome.error == ConsumeError.QUOTA_EXCEEDED
        assert outcome.state == state

    def test_quota_recovers_after_window(self):
        state = _make_state(quota_remaining=0, bucket_tokens=5)
        outcome = apply_consume(_make_rules(), state, 160, 5_000_000, 1_000_000)
        assert outcome.ok
        assert outcome.state.quota_remaining == 99
        assert outcome.state.quota_period_start_ts == 160

    def test_balance_below_floor(self):
        rules = _make_rules(refill_per_second=0)
        outcome = apply_consume(rules, _make_state(), 101, 1_000_100, 1_000_000)
        assert outcome.error == ConsumeError.INSUFFICIENT_BALANCE

    def test_failed_charge_keeps_tokens_and_quota(self):
        rules = _make_rules(refill_per_second=0)
        state = _make_state()
        outcome = apply_consume(rules, state, 101, 1_000_000, 1_000_000)
        assert outcome.error == ConsumeError.INSUFFICIENT_BALANCE
        assert outcome.state.bucket_tokens == 5
        assert outcome.state.quota_remaining == 100
        assert outcome.state.total_calls == 0

    def test_rate_limit_checked_before_quota(self):
        rules = _make_rules(refill_per_second=0)
        state = _make_state(bucket_tokens=0, quota_remaining=0)
        outcome = apply_consume(rules, state, 101, 5_000_000, 1_000_000)
        assert outcome.error == ConsumeError.RATE_LIMITED

    def test_zero_capacity_disables_bucket(self):
        rules = _make_rules(bucket_capacity=0)
        state = _make_state(bucket_tokens=0)
        outcome = apply_consume(rules, state, 101, 5_000_000, 1_000_000)
        assert outcome.ok
        assert outcome.state.bucket_tokens == 0
        assert outcome.state.bucket_last_refill_ts == 100

    def test_zero_period_limit_disables_quota(self):
        rules = _make_rules(period_limit=0)
        state = _make_state(quota_remaining=0)
        outcome = apply_consume(rules, state, 101, 5_000_000, 1_000_000)
        assert outcome.ok
        assert outcome.charge == 1_000
        assert outcome.state.quota_remaining == 0

    def test_price_uses_post_decrement_quota(self):
        """The first call of a fresh window already counts toward utilization."""
        outcome = apply_consume(
            _make_rules(max_surge_bps=10_000), _make_state(), 101, 5_000_000, 0
        )
        assert outcome.charge == dynamic_price(1_000, 100, 99, 10_000) == 1_010

    def test_input_state_not_mutated(self):
        state = _make_state()
        apply_consume(_make_rules(), state, 101, 5_000_000, 1_000_000)
        assert state == _make_state()

    def test_counters_saturate(self):
        state = _make_state(total_calls=U64_MAX, total_spent_lamports=U64_MAX)
        outcome = apply_consume(_make_rules(), state, 101, 5_000_000, 0)
        assert outcome.state.total_calls == U64_MAX
        assert outcome.state.total_spent_lamports == U64_MAX

    @pytest.mark.parametrize("now", [50, 100])
    def test_clock_behind_does_not_refill(self, now):
        rules = _make_rules(bucket_capacity=10, refill_per_second=5)
        outcome = apply_consume(rules, _make_state(bucket_tokens=1), now, 5_000_000, 0)
        assert outcome.state.bucket_tokens == 0
        assert outcome.state.bucket_last_refill_ts == 100
