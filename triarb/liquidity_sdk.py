"""
External liquidity SDK boundary.

Bin walking (dlmm) and tick walking (clmm / whirlpool) belong to the DEX
SDKs. The engine only talks to them through ``LiquiditySdk``; the shipped
implementation routes through Jupiter restricted to a single pool, so a
quote is only accepted when its one hop goes through the requested pool.
"""
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal
from fractions import Fraction
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .exceptions import ExecutionError, FailureReason, QuoteFailure
from .jupiter_client import JupiterClient, JupiterQuote, JupiterSwapInstructionsResponse, SwapInstruction
from .pools import Pool, Variant

if TYPE_CHECKING:
    from .flashloan import RouteLeg

logger = logging.getLogger(__name__)


@dataclass
class SdkQuote:
    """Raw quote as returned by a liquidity SDK, before normalization."""
    in_atomic: Optional[int]
    out_atomic: Optional[int]
    min_out_atomic: Optional[int]
    price_impact_pct: Optional[Decimal] = None  # percent
    mid_price: Optional[Fraction] = None  # output per input, human units
    fee_rate: Optional[Fraction] = None
    routing_accounts: List[str] = field(default_factory=list)
    payload: Any = None


@dataclass
class LegInstructions:
    """Instructions needed to execute one swap leg."""
    setup: List[Instruction]
    swap: List[Instruction]
    cleanup: List[Instruction]
    address_lookup_tables: List[str] = field(default_factory=list)


class LiquiditySdk(ABC):
    """Contract the quote adapters and the flashloan planner rely on."""

    @abstractmethod
    async def load(self, pool: Pool) -> None:
        """Prepare SDK state for a pool. Raises QuoteFailure when the pool is unsupported."""

    @abstractmethod
    async def refresh(self, pool: Pool) -> None:
        """Drop any cached state so the next exact quote reflects current chain state."""

    @abstractmethod
    async def quote(
        self,
        pool: Pool,
        in_atomic: int,
        swap_for_y: bool,
        slippage_bps: int,
        exact: bool = True
    ) -> SdkQuote:
        """Quote an exact-input swap through this pool only."""

    @abstractmethod
    async def build_swap_instructions(self, leg: "RouteLeg", payer: Pubkey) -> LegInstructions:
        """Build the swap instructions for one planned leg."""


def to_solders_instruction(swap_instr: SwapInstruction) -> Instruction:
    """
    Convert a SwapInstruction from Jupiter API to a solders Instruction.

    Raises:
        ValueError: If instruction data is not valid base64
    """
    program_id = Pubkey.from_string(swap_instr.program_id)
    accounts = [
        AccountMeta(
            pubkey=Pubkey.from_string(meta.pubkey),
            is_signer=meta.is_signer,
            is_writable=meta.is_writable
        )
        for meta in swap_instr.accounts
    ]
    try:
        data = base64.b64decode(swap_instr.data)
    except Exception as e:
        raise ValueError(f"Failed to decode instruction data from base64: {e}") from e
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def enforce_min_out(quote: JupiterQuote, min_out_atomic: int) -> JupiterQuote:
    """
    Copy of quote whose otherAmountThreshold is at least min_out_atomic.

    The swap program enforces the threshold on chain. Returns quote itself
    when it is already strict enough.
    """
    if quote.other_amount_threshold is None or quote.other_amount_threshold >= min_out_atomic:
        return quote
    raw = dict(quote.raw)
    if raw:
        raw["otherAmountThreshold"] = str(min_out_atomic)
    return replace(quote, other_amount_threshold=min_out_atomic, raw=raw)


@dataclass
class JupiterPayload:
    """Opaque context carried on a Quote so the swap can be built later."""
    quote: JupiterQuote
    instructions: Optional[JupiterSwapInstructionsResponse] = None


class JupiterLiquiditySdk(LiquiditySdk):
    """LiquiditySdk backed by Jupiter quotes pinned to a single pool."""

    DEX_LABELS: Dict[Tuple[Variant, str], str] = {
        (Variant.DLMM, "meteora"): "Meteora DLMM",
        (Variant.CLMM, "raydium"): "Raydium CLMM",
        (Variant.WHIRLPOOL, "orca"): "Whirlpool",
        (Variant.CPMM, "raydium"): "Raydium CP",
    }

    # Used when the record carries no recognised DEX name
    DEFAULT_LABELS: Dict[Variant, str] = {
        Variant.DLMM: "Meteora DLMM",
        Variant.CLMM: "Raydium CLMM",
        Variant.WHIRLPOOL: "Whirlpool",
        Variant.CPMM: "Raydium CP",
    }

    def __init__(
        self,
        client: JupiterClient,
        user_public_key: Optional[str] = None,
        dex_labels: Optional[Dict[Tuple[Variant, str], str]] = None
    ):
        self.client = client
        self.user_public_key = user_public_key
        self.dex_labels = dict(self.DEX_LABELS)
        if dex_labels:
            self.dex_labels.update(dex_labels)
        self._loaded: Dict[str, str] = {}  # pool address -> dex label
        self._fast_cache: Dict[Tuple[str, int, bool], SdkQuote] = {}

    def label_for(self, pool: Pool) -> Optional[str]:
        label = self.dex_labels.get((pool.variant, pool.dex))
        if label is None and pool.dex in ("unknown", ""):
            label = self.DEFAULT_LABELS.get(pool.variant)
        return label

    async def load(self, pool: Pool) -> None:
        label = self.label_for(pool)
        if label is None:
            raise QuoteFailure(
                FailureReason.ADAPTER_UNAVAILABLE,
                f"no Jupiter DEX label for {pool.variant.value}/{pool.dex}"
            )
        self._loaded[pool.address] = label

    async def refresh(self, pool: Pool) -> None:
        for key in [k for k in self._fast_cache if k[0] == pool.address]:
            del self._fast_cache[key]

    async def quote(
        self,
        pool: Pool,
        in_atomic: int,
        swap_for_y: bool,
        slippage_bps: int,
        exact: bool = True
    ) -> SdkQuote:
        label = self._loaded.get(pool.address)
        if label is None:
            await self.load(pool)
            label = self._loaded[pool.address]

        cache_key = (pool.address, in_atomic, swap_for_y)
        if not exact and cache_key in self._fast_cache:
            return self._fast_cache[cache_key]

        input_mint, output_mint = (
            (pool.base_mint, pool.quote_mint) if swap_for_y else (pool.quote_mint, pool.base_mint)
        )
        jup_quote = await self.client.get_quote(
            input_mint,
            output_mint,
            in_atomic,
            slippage_bps=slippage_bps,
            dexes=[label],
            only_direct_routes=True
        )
        if jup_quote is None:
            raise QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, f"no {label} quote for pool {pool.address}")

        amm_keys = jup_quote.amm_keys()
        if amm_keys != [pool.address]:
            # Jupiter routed through a different pool of the same DEX; never guess
            raise QuoteFailure(
                FailureReason.INCOMPLETE_QUOTE,
                f"route does not go through pool {pool.address} (hops: {amm_keys})"
            )

        impact = None
        if jup_quote.price_impact_pct not in (None, ""):
            impact = Decimal(str(jup_quote.price_impact_pct)) * 100

        payload = JupiterPayload(quote=jup_quote)
        routing_accounts: List[str] = []
        if exact and self.user_public_key:
            instructions = await self.client.get_swap_instructions(jup_quote, self.user_public_key)
            if instructions is None:
                raise QuoteFailure(FailureReason.INCOMPLETE_QUOTE, "swap instructions unavailable")
            payload.instructions = instructions
            routing_accounts = [
                meta.pubkey for meta in instructions.swap_instruction.accounts if not meta.is_signer
            ]

        sdk_quote = SdkQuote(
            in_atomic=jup_quote.in_amount,
            out_atomic=jup_quote.out_amount,
            min_out_atomic=jup_quote.other_amount_threshold,
            price_impact_pct=impact,
            mid_price=None,
            fee_rate=pool.fee_rate,
            routing_accounts=routing_accounts,
            payload=payload
        )
        if not exact:
            self._fast_cache[cache_key] = sdk_quote
        return sdk_quote

    async def build_swap_instructions(self, leg: "RouteLeg", payer: Pubkey) -> LegInstructions:
        payload = leg.sdk_payload if isinstance(leg.sdk_payload, JupiterPayload) else None
        jup_quote = payload.quote if payload else None

        if jup_quote is None or jup_quote.in_amount != leg.amount_in_atomic:
            # No reusable quote for this exact input; quote the leg amount itself
            jup_quote = await self.client.get_quote(
                leg.input_mint,
                leg.output_mint,
                leg.amount_in_atomic,
                slippage_bps=jup_quote.slippage_bps if jup_quote else 50,
                dexes=[self.dex_label_for_leg(leg)],
                only_direct_routes=True
            )
            if jup_quote is None or jup_quote.amm_keys() != [leg.pool_address]:
                raise ExecutionError(f"cannot re-quote leg through pool {leg.pool_address}")

        if jup_quote.out_amount < leg.min_out_atomic:
            raise ExecutionError(
                f"leg through {leg.pool_address} now quotes {jup_quote.out_amount} "
                f"below min out {leg.min_out_atomic}"
            )
        jup_quote = enforce_min_out(jup_quote, leg.min_out_atomic)

        response = None
        if payload and payload.instructions and payload.quote is jup_quote and str(payer) == self.user_public_key:
            response = payload.instructions
        else:
            response = await self.client.get_swap_instructions(jup_quote, str(payer))
        if response is None:
            raise ExecutionError(f"swap instructions unavailable for pool {leg.pool_address}")

        try:
            return LegInstructions(
                setup=[to_solders_instruction(i) for i in response.setup_instructions],
                swap=[to_solders_instruction(response.swap_instruction)],
                cleanup=(
                    [to_solders_instruction(response.cleanup_instruction)]
                    if response.cleanup_instruction else []
                ),
                address_lookup_tables=list(response.address_lookup_tables)
            )
        except (ValueError, NotImplementedError) as e:
            raise ExecutionError(f"invalid swap instruction for pool {leg.pool_address}: {e}") from e

    def dex_label_for_leg(self, leg: "RouteLeg") -> str:
        label = self._loaded.get(leg.pool_address)
        if label:
            return label
        return self.DEFAULT_LABELS.get(leg.variant, "Raydium CP")
