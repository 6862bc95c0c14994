"""
Tests for leg_simulator.py
"""
import asyncio
from dataclasses import replace
from decimal import Decimal
from fractions import Fraction
from unittest.mock import AsyncMock, MagicMock

import pytest

from triarb.exceptions import FailureReason, QuoteFailure
from triarb.leg_simulator import LegSimulator, SimulationMetrics
from triarb.liquidity_sdk import SdkQuote
from triarb.quotes import Provenance


def make_sdk(sdk_quote=None, quote_error=None):
    sdk = MagicMock()
    sdk.load = AsyncMock()
    sdk.refresh = AsyncMock()
    sdk.quote = AsyncMock(return_value=sdk_quote, side_effect=quote_error)
    return sdk


class TestSimulateLeg:
    """Tests for LegSimulator.simulate_leg."""

    @pytest.mark.asyncio
    async def test_cpmm_via_adapter(self, sol_usdc_pool, sol_mint, usdc_mint):
        simulator = LegSimulator()

        leg = await simulator.simulate_leg(sol_usdc_pool, sol_mint, usdc_mint, 1_000_000_000)

        assert leg.ok
        assert leg.via == "adapter-cpmm"
        assert leg.is_verified
        assert leg.out_atomic > 0
        assert simulator.metrics.adapter_successes == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, 1.0, None, True])
    async def test_invalid_amount(self, sol_usdc_pool, sol_mint, usdc_mint, amount):
        simulator = LegSimulator()

        leg = await simulator.simulate_leg(sol_usdc_pool, sol_mint, usdc_mint, amount)

        assert not leg.ok
        assert leg.reason == FailureReason.INVALID_AMOUNT.value
        assert simulator.metrics.failures == 1

    @pytest.mark.asyncio
    async def test_mint_not_in_pool(self, sol_usdc_pool, sol_mint, jup_mint):
        leg = await LegSimulator().simulate_leg(sol_usdc_pool, sol_mint, jup_mint, 1_000)

        assert not leg.ok
        assert leg.reason == FailureReason.MINT_NOT_IN_POOL.value

    @pytest.mark.asyncio
    async def test_same_input_and_output_mint(self, sol_usdc_pool, sol_mint):
        leg = await LegSimulator().simulate_leg(sol_usdc_pool, sol_mint, sol_mint, 1_000)

        assert leg.reason == FailureReason.MINT_NOT_IN_POOL.value

    @pytest.mark.asyncio
    async def test_fallback_disabled_by_default(self, sol_usdc_pool, sol_mint, usdc_mint):
        """A cpmm pool without reserves fails instead of quoting from guesses."""
        pool = replace(sol_usdc_pool, x_reserve=None)

        leg = await LegSimulator().simulate_leg(pool, sol_mint, usdc_mint, 1_000)

        assert not leg.ok
        assert leg.reason == FailureReason.NO_SIMULATION_METHOD.value
        assert "reserves-missing" in leg.detail

    @pytest.mark.asyncio
    async def test_dlmm_math_fallback_is_approximated(self, dlmm_pool, sol_mint, usdc_mint):
        """With fallback enabled, a dlmm leg whose SDK fails is quoted by cpmm math."""
        sdk = make_sdk(quote_error=QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, "down"))
        simulator = LegSimulator(sdk=sdk, allow_math_fallback=True)

        leg = await simulator.simulate_leg(dlmm_pool, sol_mint, usdc_mint, 1_000_000_000)

        assert leg.ok
        assert leg.via == "math-dlmm"
        assert leg.quote.provenance is Provenance.APPROXIMATED
        assert not leg.is_verified
        assert simulator.metrics.fallback_successes == 1

    @pytest.mark.asyncio
    async def test_fallback_failure_keeps_math_reason(self, dlmm_pool, sol_mint, usdc_mint):
        pool = replace(dlmm_pool, fee_rate=None)
        simulator = LegSimulator(sdk=make_sdk(quote_error=RuntimeError("x")), allow_math_fallback=True)

        leg = await simulator.simulate_leg(pool, sol_mint, usdc_mint, 1_000)

        assert leg.reason == FailureReason.FEE_MISSING.value

    @pytest.mark.asyncio
    async def test_fee_out_of_range_is_a_failed_leg(self, sol_usdc_pool, dlmm_pool, sol_mint, usdc_mint):
        """A fee of 25 (2500%) is reported as a failure, never raised."""
        leg = await LegSimulator().simulate_leg(replace(sol_usdc_pool, fee_rate=Fraction(25)), sol_mint, usdc_mint, 1_000)

        assert not leg.ok
        assert leg.reason == FailureReason.NO_SIMULATION_METHOD.value
        assert "fee-invalid" in leg.detail

        sdk = make_sdk(quote_error=QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, "down"))
        simulator = LegSimulator(sdk=sdk, allow_math_fallback=True)
        leg = await simulator.simulate_leg(replace(dlmm_pool, fee_rate=Fraction(25)), sol_mint, usdc_mint, 1_000)

        assert not leg.ok
        assert leg.reason == FailureReason.FEE_INVALID.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pool_fixture,reason", [
        ("clmm_pool", "clmm-sdk-failed"),
        ("whirlpool_pool", "whirlpool-sdk-failed"),
    ])
    async def test_concentrated_never_falls_back(self, request, pool_fixture, reason, sol_mint, usdc_mint):
        pool = request.getfixturevalue(pool_fixture)
        pool = replace(pool, x_reserve=10 ** 12, y_reserve=10 ** 12)
        simulator = LegSimulator(sdk=make_sdk(quote_error=QuoteFailure(FailureReason.INCOMPLETE_QUOTE)), allow_math_fallback=True)

        leg = await simulator.simulate_leg(pool, sol_mint, usdc_mint, 1_000)

        assert not leg.ok
        assert leg.reason == reason
        assert simulator.metrics.fallback_calls == 0

    @pytest.mark.asyncio
    async def test_clmm_via_sdk(self, clmm_pool, sol_mint, usdc_mint):
        sdk = make_sdk(SdkQuote(in_atomic=1_000, out_atomic=90, min_out_atomic=89, price_impact_pct=Decimal("0.1")))

        leg = await LegSimulator(sdk=sdk).simulate_leg(clmm_pool, sol_mint, usdc_mint, 1_000)

        assert leg.ok
        assert leg.via == "adapter-clmm"
        assert leg.out_atomic == 90

    @pytest.mark.asyncio
    async def test_quote_timeout(self, clmm_pool, sol_mint, usdc_mint):
        async def slow_quote(*args, **kwargs):
            await asyncio.sleep(1)

        sdk = make_sdk()
        sdk.quote.side_effect = slow_quote
        simulator = LegSimulator(sdk=sdk, quote_timeout=0.01)

        leg = await simulator.simulate_leg(clmm_pool, sol_mint, usdc_mint, 1_000)

        assert leg.reason == FailureReason.QUOTE_TIMEOUT.value


class TestSimulationMetrics:
    """Metrics are run-scoped."""

    def test_instances_do_not_share_counters(self):
        first = LegSimulator()
        second = LegSimulator()
        first.metrics.failures += 3

        assert second.metrics.failures == 0

    def test_reset_and_snapshot(self):
        metrics = SimulationMetrics(adapter_calls=2, failures=1)

        assert metrics.snapshot()["adapter_calls"] == 2
        metrics.reset()
        assert metrics.snapshot() == {
            "adapter_calls": 0,
            "adapter_successes": 0,
            "fallback_calls": 0,
            "fallback_successes": 0,
            "failures": 0,
        }
