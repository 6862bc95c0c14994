"""
Leg simulator: one swap leg against one pool.

Prefers the variant's quote adapter. A closed-form cpmm fallback exists for
reserve-backed pools (cpmm, dlmm) but is disabled by default; concentrated
liquidity legs never fall back.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from .adapters import create_adapter
from .exceptions import FailureReason, QuoteFailure
from .liquidity_sdk import LiquiditySdk
from .pools import CONCENTRATED_VARIANTS, RESERVE_BACKED_VARIANTS, Pool
from .quotes import Provenance, Quote, cpmm_quote
from .utils import get_terminal_colors, short_addr

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


@dataclass
class SimulationMetrics:
    """Run-scoped counters. Create one per run; nothing here is global."""
    adapter_calls: int = 0
    adapter_successes: int = 0
    fallback_calls: int = 0
    fallback_successes: int = 0
    failures: int = 0

    def reset(self):
        self.adapter_calls = 0
        self.adapter_successes = 0
        self.fallback_calls = 0
        self.fallback_successes = 0
        self.failures = 0

    def snapshot(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class LegResult:
    """Outcome of one simulated leg."""
    ok: bool
    pool: Pool
    input_mint: str
    output_mint: str
    dx_atomic: object
    quote: Optional[Quote] = None
    via: Optional[str] = None  # 'adapter-<variant>' or 'math-<variant>'
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def out_atomic(self) -> Optional[int]:
        return self.quote.out_atomic if self.quote else None

    @property
    def is_verified(self) -> bool:
        return self.quote is not None and self.quote.provenance is Provenance.VERIFIED


class LegSimulator:
    """Simulates single legs and keeps success/failure counters."""

    def __init__(
        self,
        sdk: Optional[LiquiditySdk] = None,
        metrics: Optional[SimulationMetrics] = None,
        allow_math_fallback: bool = False,
        slippage_bps: int = 50,
        quote_timeout: float = 10.0
    ):
        self.sdk = sdk
        self.metrics = metrics if metrics is not None else SimulationMetrics()
        self.allow_math_fallback = allow_math_fallback
        self.slippage_bps = slippage_bps
        self.quote_timeout = quote_timeout

    def _fail(self, pool: Pool, input_mint: str, output_mint: str, dx_atomic, reason, detail: Optional[str] = None) -> LegResult:
        self.metrics.failures += 1
        reason_str = reason.value if isinstance(reason, FailureReason) else reason
        logger.debug(
            f"{colors['RED']}Leg failed{colors['RESET']} on {short_addr(pool.address)} "
            f"({pool.variant.value}): {reason_str}{f' ({detail})' if detail else ''}"
        )
        return LegResult(
            ok=False,
            pool=pool,
            input_mint=input_mint,
            output_mint=output_mint,
            dx_atomic=dx_atomic,
            reason=reason_str,
            detail=detail
        )

    async def _adapter_quote(self, pool: Pool, dx_atomic: int, swap_for_y: bool) -> Quote:
        adapter = create_adapter(pool, self.sdk)
        await asyncio.wait_for(adapter.init(), timeout=self.quote_timeout)
        return await asyncio.wait_for(
            adapter.quote_exact_in(dx_atomic, swap_for_y, self.slippage_bps),
            timeout=self.quote_timeout
        )

    async def simulate_leg(
        self,
        pool: Pool,
        input_mint: str,
        output_mint: str,
        dx_atomic: int,
        prefer_sdk: bool = True
    ) -> LegResult:
        """
        Simulate swapping dx_atomic of input_mint for output_mint through pool.

        Args:
            pool: Hydrated pool record
            input_mint: Mint being sold
            output_mint: Mint being bought
            dx_atomic: Exact input amount (atomic units, positive int)
            prefer_sdk: Try the quote adapter first

        Returns:
            LegResult; failures are results, not exceptions
        """
        if not isinstance(dx_atomic, int) or isinstance(dx_atomic, bool) or dx_atomic <= 0:
            return self._fail(pool, input_mint, output_mint, dx_atomic, FailureReason.INVALID_AMOUNT)
        if input_mint == output_mint or not pool.has_mint(input_mint) or not pool.has_mint(output_mint):
            return self._fail(pool, input_mint, output_mint, dx_atomic, FailureReason.MINT_NOT_IN_POOL)

        swap_for_y = input_mint == pool.base_mint
        variant = pool.variant
        adapter_detail = None

        if prefer_sdk:
            self.metrics.adapter_calls += 1
            try:
                quote = await self._adapter_quote(pool, dx_atomic, swap_for_y)
                if quote.out_atomic > 0:
                    self.metrics.adapter_successes += 1
                    return LegResult(
                        ok=True,
                        pool=pool,
                        input_mint=input_mint,
                        output_mint=output_mint,
                        dx_atomic=dx_atomic,
                        quote=quote,
                        via=f"adapter-{variant.value}"
                    )
                adapter_detail = "adapter returned zero output"
            except asyncio.TimeoutError:
                return self._fail(
                    pool, input_mint, output_mint, dx_atomic,
                    FailureReason.QUOTE_TIMEOUT, f"no quote within {self.quote_timeout}s"
                )
            except QuoteFailure as e:
                adapter_detail = str(e)

        if variant in CONCENTRATED_VARIANTS:
            return self._fail(
                pool, input_mint, output_mint, dx_atomic,
                f"{variant.value}-sdk-failed", adapter_detail
            )

        if not (self.allow_math_fallback and variant in RESERVE_BACKED_VARIANTS):
            return self._fail(
                pool, input_mint, output_mint, dx_atomic,
                FailureReason.NO_SIMULATION_METHOD, adapter_detail
            )

        self.metrics.fallback_calls += 1
        try:
            quote = cpmm_quote(
                pool,
                input_mint,
                dx_atomic,
                self.slippage_bps,
                provenance=Provenance.APPROXIMATED,
                dex_type=variant.value
            )
        except QuoteFailure as e:
            return self._fail(pool, input_mint, output_mint, dx_atomic, e.reason, adapter_detail)

        if quote.out_atomic <= 0:
            return self._fail(pool, input_mint, output_mint, dx_atomic, FailureReason.RESERVES_ZERO, "math output is zero")

        self.metrics.fallback_successes += 1
        return LegResult(
            ok=True,
            pool=pool,
            input_mint=input_mint,
            output_mint=output_mint,
            dx_atomic=dx_atomic,
            quote=quote,
            via=f"math-{variant.value}"
        )
