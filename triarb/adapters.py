"""
Quote adapters: one per pool variant, all behind the QuoteAdapter contract.

The cpmm adapter quotes from hydrated reserves. The dlmm, clmm and whirlpool
adapters delegate the liquidity walk to a LiquiditySdk and only normalize
what comes back; an incomplete SDK answer is a QuoteFailure, never a guess.
"""
import logging
from abc import ABC, abstractmethod
from fractions import Fraction
from typing import ClassVar, Dict, Optional, Type

from .exceptions import AdapterInitError, FailureReason, QuoteFailure
from .liquidity_sdk import LiquiditySdk, SdkQuote
from .pools import Pool, Variant, has_valid_reserves
from .quotes import Provenance, Quote, cpmm_quote, human_ratio, price_impact_pct, to_decimal

logger = logging.getLogger(__name__)


class QuoteAdapter(ABC):
    """Variant-specific quoting for a single pool."""

    variant: ClassVar[Variant]

    def __init__(self, pool: Pool, sdk: Optional[LiquiditySdk] = None):
        self.pool = pool
        self.sdk = sdk
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @abstractmethod
    async def init(self) -> "QuoteAdapter":
        """
        Prepare the adapter.

        Returns:
            self, ready to quote

        Raises:
            AdapterInitError: pool data or SDK unavailable
        """

    @abstractmethod
    async def quote_fast_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        """Cheap quote, may use cached SDK state."""

    @abstractmethod
    async def quote_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        """Execution-grade quote against current state."""

    def _input_mint(self, swap_for_y: bool) -> str:
        return self.pool.base_mint if swap_for_y else self.pool.quote_mint

    def _require_ready(self, in_atomic: int):
        if not self._ready:
            raise QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, "adapter used before init()")
        if not isinstance(in_atomic, int) or isinstance(in_atomic, bool) or in_atomic <= 0:
            raise QuoteFailure(FailureReason.INVALID_AMOUNT, f"input amount must be a positive int, got {in_atomic!r}")


class CpmmAdapter(QuoteAdapter):
    """Constant-product pools quoted from hydrated vault reserves."""

    variant = Variant.CPMM

    async def init(self) -> "CpmmAdapter":
        pool = self.pool
        if pool.x_reserve is None or pool.y_reserve is None:
            raise AdapterInitError(FailureReason.RESERVES_MISSING)
        if not has_valid_reserves(pool):
            raise AdapterInitError(FailureReason.RESERVES_ZERO)
        if pool.fee_rate is None:
            raise AdapterInitError(FailureReason.FEE_MISSING)
        if not 0 <= pool.fee_rate < 1:
            raise AdapterInitError(FailureReason.FEE_INVALID)
        if pool.base_decimals is None or pool.quote_decimals is None:
            raise AdapterInitError(FailureReason.DECIMALS_MISSING)
        self._ready = True
        return self

    async def quote_fast_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        return await self.quote_exact_in(in_atomic, swap_for_y, slippage_bps)

    async def quote_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        self._require_ready(in_atomic)
        return cpmm_quote(
            self.pool,
            self._input_mint(swap_for_y),
            in_atomic,
            slippage_bps,
            provenance=Provenance.VERIFIED,
            dex_type=self.variant.value
        )


class SdkQuoteAdapter(QuoteAdapter):
    """Base for variants whose liquidity walk lives in an external SDK."""

    async def init(self) -> "SdkQuoteAdapter":
        if self.sdk is None:
            raise AdapterInitError(FailureReason.ADAPTER_UNAVAILABLE, f"no SDK for {self.variant.value}")
        if self.pool.base_decimals is None or self.pool.quote_decimals is None:
            raise AdapterInitError(FailureReason.DECIMALS_MISSING)
        try:
            await self.sdk.load(self.pool)
        except QuoteFailure as e:
            raise AdapterInitError(e.reason, str(e)) from e
        except Exception as e:
            raise AdapterInitError(FailureReason.ADAPTER_UNAVAILABLE, f"SDK load failed: {e}") from e
        self._ready = True
        return self

    async def quote_fast_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        self._require_ready(in_atomic)
        sdk_quote = await self._call_sdk(in_atomic, swap_for_y, slippage_bps, exact=False)
        return self._normalize(sdk_quote, in_atomic, swap_for_y)

    async def quote_exact_in(self, in_atomic: int, swap_for_y: bool, slippage_bps: int) -> Quote:
        self._require_ready(in_atomic)
        try:
            await self.sdk.refresh(self.pool)
        except Exception as e:
            raise QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, f"SDK refresh failed: {e}") from e
        sdk_quote = await self._call_sdk(in_atomic, swap_for_y, slippage_bps, exact=True)
        return self._normalize(sdk_quote, in_atomic, swap_for_y)

    async def _call_sdk(self, in_atomic: int, swap_for_y: bool, slippage_bps: int, exact: bool) -> SdkQuote:
        try:
            return await self.sdk.quote(self.pool, in_atomic, swap_for_y, slippage_bps, exact=exact)
        except QuoteFailure:
            raise
        except Exception as e:
            raise QuoteFailure(FailureReason.ADAPTER_UNAVAILABLE, f"SDK quote failed: {e}") from e

    def _direction_mid_price(self, sdk_quote: SdkQuote, swap_for_y: bool) -> Optional[Fraction]:
        if sdk_quote.mid_price is not None and sdk_quote.mid_price > 0:
            return sdk_quote.mid_price
        pool_mid = self.pool.mid_price
        if pool_mid is None or pool_mid <= 0:
            return None
        # pool mid price is quote per base
        return pool_mid if swap_for_y else 1 / pool_mid

    def _normalize(self, sdk_quote: SdkQuote, in_atomic: int, swap_for_y: bool) -> Quote:
        out_atomic = sdk_quote.out_atomic
        min_out = sdk_quote.min_out_atomic
        if not isinstance(out_atomic, int) or isinstance(out_atomic, bool):
            raise QuoteFailure(FailureReason.INCOMPLETE_QUOTE, "SDK quote has no integer output amount")
        if not isinstance(min_out, int) or isinstance(min_out, bool):
            raise QuoteFailure(FailureReason.INCOMPLETE_QUOTE, "SDK quote has no integer minimum output")
        if out_atomic < 0 or min_out < 0 or min_out > out_atomic:
            raise QuoteFailure(
                FailureReason.INCOMPLETE_QUOTE,
                f"inconsistent SDK amounts out={out_atomic} min_out={min_out}"
            )
        if sdk_quote.in_atomic is not None and sdk_quote.in_atomic != in_atomic:
            raise QuoteFailure(
                FailureReason.INCOMPLETE_QUOTE,
                f"SDK consumed {sdk_quote.in_atomic} instead of {in_atomic}"
            )

        if swap_for_y:
            in_decimals, out_decimals = self.pool.base_decimals, self.pool.quote_decimals
        else:
            in_decimals, out_decimals = self.pool.quote_decimals, self.pool.base_decimals
        execution = human_ratio(out_atomic, out_decimals, in_atomic, in_decimals)

        if sdk_quote.price_impact_pct is not None:
            impact = abs(sdk_quote.price_impact_pct)
        else:
            mid = self._direction_mid_price(sdk_quote, swap_for_y)
            if mid is None:
                raise QuoteFailure(FailureReason.INCOMPLETE_QUOTE, "SDK quote has neither impact nor mid price")
            impact = price_impact_pct(mid, execution)

        return Quote(
            in_atomic=in_atomic,
            out_atomic=out_atomic,
            min_out_atomic=min_out,
            execution_price=to_decimal(execution),
            price_impact_pct=impact,
            fee_rate=sdk_quote.fee_rate if sdk_quote.fee_rate is not None else self.pool.fee_rate,
            provenance=Provenance.VERIFIED,
            pool_address=self.pool.address,
            dex_type=self.variant.value,
            swap_for_y=swap_for_y,
            routing_accounts=list(sdk_quote.routing_accounts),
            sdk_payload=sdk_quote.payload
        )


class DlmmAdapter(SdkQuoteAdapter):
    """Bin-based pools (Meteora DLMM)."""
    variant = Variant.DLMM


class ConcentratedLiquidityAdapter(SdkQuoteAdapter):
    """Tick-based pools; a failed quote here has no closed-form fallback."""


class ClmmAdapter(ConcentratedLiquidityAdapter):
    variant = Variant.CLMM


class WhirlpoolAdapter(ConcentratedLiquidityAdapter):
    variant = Variant.WHIRLPOOL


ADAPTERS: Dict[Variant, Type[QuoteAdapter]] = {
    Variant.CPMM: CpmmAdapter,
    Variant.DLMM: DlmmAdapter,
    Variant.CLMM: ClmmAdapter,
    Variant.WHIRLPOOL: WhirlpoolAdapter,
}


def create_adapter(pool: Pool, sdk: Optional[LiquiditySdk] = None) -> QuoteAdapter:
    """Pick the adapter for the pool's variant."""
    return ADAPTERS[pool.variant](pool, sdk)
