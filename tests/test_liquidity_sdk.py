"""
Tests for liquidity_sdk.py
"""
import base64
from dataclasses import replace
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock
from solders.pubkey import Pubkey

from triarb.exceptions import ExecutionError, QuoteFailure
from triarb.flashloan import DexType, RouteLeg
from triarb.jupiter_client import (
    JupiterQuote,
    JupiterSwapInstructionsResponse,
    SwapAccountMeta,
    SwapInstruction,
)
from triarb.liquidity_sdk import JupiterLiquiditySdk, JupiterPayload, to_solders_instruction
from triarb.pools import Variant


def jupiter_quote(input_mint, output_mint, in_amount, out_amount, amm_key, impact="0.0025"):
    return JupiterQuote(
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=in_amount,
        out_amount=out_amount,
        other_amount_threshold=out_amount * 995 // 1000,
        price_impact_pct=impact,
        route_plan=[{"swapInfo": {"ammKey": amm_key}, "percent": 100}],
    )


def swap_instruction(writable_account):
    return SwapInstruction(
        program_id=str(Pubkey.new_unique()),
        accounts=[
            SwapAccountMeta(pubkey=writable_account, is_signer=False, is_writable=True),
            SwapAccountMeta(pubkey=str(Pubkey.new_unique()), is_signer=True, is_writable=True),
        ],
        data=base64.b64encode(b"\x09\x01").decode()
    )


@pytest.fixture
def jupiter():
    client = MagicMock()
    client.get_quote = AsyncMock()
    client.get_swap_instructions = AsyncMock()
    return client


@pytest.fixture
def sdk(jupiter):
    return JupiterLiquiditySdk(jupiter)


class TestLabels:
    """DEX label resolution and load()."""

    def test_known_labels(self, sdk, whirlpool_pool, clmm_pool, dlmm_pool, sol_usdc_pool):
        assert sdk.label_for(whirlpool_pool) == "Whirlpool"
        assert sdk.label_for(clmm_pool) == "Raydium CLMM"
        assert sdk.label_for(dlmm_pool) == "Meteora DLMM"
        assert sdk.label_for(sol_usdc_pool) == "Raydium CP"

    def test_unknown_dex_uses_variant_default(self, sdk, whirlpool_pool):
        assert sdk.label_for(replace(whirlpool_pool, dex="unknown")) == "Whirlpool"

    @pytest.mark.asyncio
    async def test_load_unsupported_dex(self, sdk, clmm_pool):
        with pytest.raises(QuoteFailure) as exc_info:
            await sdk.load(replace(clmm_pool, dex="someotherdex"))

        assert exc_info.value.reason == "adapter-unavailable"

    def test_custom_labels(self, jupiter, clmm_pool):
        sdk = JupiterLiquiditySdk(jupiter, dex_labels={(Variant.CLMM, "someotherdex"): "Other CLMM"})
        assert sdk.label_for(replace(clmm_pool, dex="someotherdex")) == "Other CLMM"


class TestQuote:
    """JupiterLiquiditySdk.quote()"""

    @pytest.mark.asyncio
    async def test_quote_pinned_to_pool(self, sdk, jupiter, whirlpool_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(
            sol_mint, usdc_mint, 10 ** 9, 99_000_000, whirlpool_pool.address
        )

        quote = await sdk.quote(whirlpool_pool, 10 ** 9, swap_for_y=True, slippage_bps=50)

        assert quote.out_atomic == 99_000_000
        assert quote.min_out_atomic == 99_000_000 * 995 // 1000
        assert quote.price_impact_pct == Decimal("0.25")
        assert quote.fee_rate == whirlpool_pool.fee_rate
        assert isinstance(quote.payload, JupiterPayload)
        call = jupiter.get_quote.await_args
        assert call.args[:2] == (sol_mint, usdc_mint)
        assert call.kwargs["dexes"] == ["Whirlpool"]
        assert call.kwargs["only_direct_routes"] is True

    @pytest.mark.asyncio
    async def test_reverse_direction(self, sdk, jupiter, whirlpool_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(
            usdc_mint, sol_mint, 100_000_000, 990_000_000, whirlpool_pool.address
        )

        await sdk.quote(whirlpool_pool, 100_000_000, swap_for_y=False, slippage_bps=50)

        assert jupiter.get_quote.await_args.args[:2] == (usdc_mint, sol_mint)

    @pytest.mark.asyncio
    async def test_route_through_other_pool_rejected(self, sdk, jupiter, whirlpool_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(sol_mint, usdc_mint, 10 ** 9, 99_000_000, "someOtherPool")

        with pytest.raises(QuoteFailure) as exc_info:
            await sdk.quote(whirlpool_pool, 10 ** 9, swap_for_y=True, slippage_bps=50)

        assert exc_info.value.reason == "incomplete-quote"

    @pytest.mark.asyncio
    async def test_no_quote(self, sdk, jupiter, whirlpool_pool):
        jupiter.get_quote.return_value = None

        with pytest.raises(QuoteFailure) as exc_info:
            await sdk.quote(whirlpool_pool, 10 ** 9, swap_for_y=True, slippage_bps=50)

        assert exc_info.value.reason == "adapter-unavailable"

    @pytest.mark.asyncio
    async def test_fast_quotes_are_cached(self, sdk, jupiter, clmm_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(sol_mint, usdc_mint, 10 ** 9, 99_000_000, clmm_pool.address)

        first = await sdk.quote(clmm_pool, 10 ** 9, swap_for_y=True, slippage_bps=50, exact=False)
        second = await sdk.quote(clmm_pool, 10 ** 9, swap_for_y=True, slippage_bps=50, exact=False)
        assert first is second
        assert jupiter.get_quote.await_count == 1

        await sdk.refresh(clmm_pool)
        await sdk.quote(clmm_pool, 10 ** 9, swap_for_y=True, slippage_bps=50, exact=False)
        assert jupiter.get_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_exact_quote_fetches_routing_accounts(self, jupiter, whirlpool_pool, sol_mint, usdc_mint):
        sdk = JupiterLiquiditySdk(jupiter, user_public_key="user")
        jupiter.get_quote.return_value = jupiter_quote(
            sol_mint, usdc_mint, 10 ** 9, 99_000_000, whirlpool_pool.address
        )
        instructions = JupiterSwapInstructionsResponse(
            setup_instructions=[],
            swap_instruction=swap_instruction("tickArray1"),
            cleanup_instruction=None,
            address_lookup_tables=[]
        )
        jupiter.get_swap_instructions.return_value = instructions

        quote = await sdk.quote(whirlpool_pool, 10 ** 9, swap_for_y=True, slippage_bps=50)

        assert quote.routing_accounts == ["tickArray1"]
        assert quote.payload.instructions is instructions


class TestBuildSwapInstructions:
    """JupiterLiquiditySdk.build_swap_instructions()"""

    @pytest.fixture
    def payer(self):
        return Pubkey.new_unique()

    def leg(self, pool, sol_mint, usdc_mint, payload=None, min_out=98_000_000):
        return RouteLeg(
            input_mint=sol_mint,
            output_mint=usdc_mint,
            amount_in_atomic=10 ** 9,
            min_out_atomic=min_out,
            pool_address=pool.address,
            dex_type=DexType.ORCA_WHIRLPOOL,
            variant=Variant.WHIRLPOOL,
            sdk_payload=payload
        )

    @pytest.mark.asyncio
    async def test_builds_from_carried_quote(self, sdk, jupiter, payer, whirlpool_pool, sol_mint, usdc_mint):
        carried = jupiter_quote(sol_mint, usdc_mint, 10 ** 9, 99_000_000, whirlpool_pool.address)
        jupiter.get_swap_instructions.return_value = JupiterSwapInstructionsResponse(
            setup_instructions=[swap_instruction(str(Pubkey.new_unique()))],
            swap_instruction=swap_instruction(str(Pubkey.new_unique())),
            cleanup_instruction=None,
            address_lookup_tables=["alt1"]
        )

        result = await sdk.build_swap_instructions(
            self.leg(whirlpool_pool, sol_mint, usdc_mint, JupiterPayload(quote=carried)), payer
        )

        jupiter.get_quote.assert_not_awaited()
        assert jupiter.get_swap_instructions.await_args.args == (carried, str(payer))
        assert len(result.setup) == 1
        assert len(result.swap) == 1
        assert result.cleanup == []
        assert result.address_lookup_tables == ["alt1"]

    @pytest.mark.asyncio
    async def test_requote_below_min_out(self, sdk, jupiter, payer, whirlpool_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(
            sol_mint, usdc_mint, 10 ** 9, 97_000_000, whirlpool_pool.address
        )

        with pytest.raises(ExecutionError, match="below min out"):
            await sdk.build_swap_instructions(self.leg(whirlpool_pool, sol_mint, usdc_mint), payer)

        jupiter.get_swap_instructions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requote_threshold_raised_to_min_out(self, sdk, jupiter, payer, whirlpool_pool, sol_mint, usdc_mint):
        """A fresh quote with looser slippage still swaps with the leg's planned minimum."""
        loose = replace(
            jupiter_quote(sol_mint, usdc_mint, 10 ** 9, 1_000, whirlpool_pool.address),
            other_amount_threshold=900,
            raw={"inAmount": str(10 ** 9), "outAmount": "1000", "otherAmountThreshold": "900"}
        )
        jupiter.get_quote.return_value = loose
        jupiter.get_swap_instructions.return_value = JupiterSwapInstructionsResponse(
            setup_instructions=[],
            swap_instruction=swap_instruction(str(Pubkey.new_unique())),
            cleanup_instruction=None,
            address_lookup_tables=[]
        )

        await sdk.build_swap_instructions(self.leg(whirlpool_pool, sol_mint, usdc_mint, min_out=995), payer)

        sent = jupiter.get_swap_instructions.await_args.args[0]
        assert sent.other_amount_threshold == 995
        assert sent.raw["otherAmountThreshold"] == "995"
        assert loose.other_amount_threshold == 900
        assert loose.raw["otherAmountThreshold"] == "900"

    @pytest.mark.asyncio
    async def test_requote_wrong_pool(self, sdk, jupiter, payer, whirlpool_pool, sol_mint, usdc_mint):
        jupiter.get_quote.return_value = jupiter_quote(sol_mint, usdc_mint, 10 ** 9, 99_000_000, "elsewhere")

        with pytest.raises(ExecutionError, match="cannot re-quote"):
            await sdk.build_swap_instructions(self.leg(whirlpool_pool, sol_mint, usdc_mint), payer)


def test_to_solders_instruction():
    account = str(Pubkey.new_unique())
    instruction = to_solders_instruction(swap_instruction(account))

    assert instruction.data == b"\x09\x01"
    assert str(instruction.accounts[0].pubkey) == account
    assert instruction.accounts[0].is_writable is True
    assert instruction.accounts[1].is_signer is True


def test_to_solders_instruction_bad_data():
    bad = swap_instruction(str(Pubkey.new_unique()))
    bad.data = "not base64!!"

    with pytest.raises(ValueError):
        to_solders_instruction(bad)
