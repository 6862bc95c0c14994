"""
Normalized quote type and closed-form constant-product math.

All amounts are atomic Python ints. Prices and impact are Decimal values
derived from exact Fraction arithmetic, never from floats.
"""
import math
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from enum import Enum
from fractions import Fraction
from typing import Any, List, Optional

from .exceptions import FailureReason, QuoteFailure
from .pools import Pool, decimals_for

BPS_DENOMINATOR = 10_000
DECIMAL_PRECISION = 40


class Provenance(str, Enum):
    """Whether a quote came from the DEX SDK or from closed-form math."""
    VERIFIED = "verified"
    APPROXIMATED = "approximated"


@dataclass
class Quote:
    """Normalized single-hop quote."""
    in_atomic: int
    out_atomic: int
    min_out_atomic: int
    execution_price: Decimal  # output per input, human units
    price_impact_pct: Decimal  # percent, e.g. Decimal('0.25') == 0.25%
    fee_rate: Optional[Fraction]
    provenance: Provenance
    pool_address: str
    dex_type: str
    swap_for_y: bool
    routing_accounts: List[str] = field(default_factory=list)
    sdk_payload: Optional[Any] = None  # aggregator context needed to build the swap later

    @property
    def is_verified(self) -> bool:
        return self.provenance is Provenance.VERIFIED


def to_decimal(value: Fraction) -> Decimal:
    """Exact-as-possible Fraction -> Decimal (terminating ratios come out exact)."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(value.numerator) / Decimal(value.denominator)


def apply_slippage(amount_out: int, slippage_bps: int) -> int:
    """floor(amount_out * (1 - slippage_bps / 10000))"""
    if slippage_bps < 0 or slippage_bps > BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be within [0, {BPS_DENOMINATOR}], got {slippage_bps}")
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def cpmm_amount_out(dx: int, x: int, y: int, fee_rate: Fraction) -> int:
    """
    Constant-product output for an exact input.

    dx_eff = dx * (1 - f); dy = floor(dx_eff * y / (x + dx_eff)).
    Always 0 <= dy < y.
    """
    if dx <= 0:
        raise ValueError(f"dx must be positive, got {dx}")
    if x <= 0 or y <= 0:
        raise ValueError("reserves must be positive")
    if fee_rate < 0 or fee_rate >= 1:
        raise ValueError(f"fee_rate must be within [0, 1), got {fee_rate}")
    dx_eff = Fraction(dx) * (1 - fee_rate)
    return math.floor(dx_eff * y / (x + dx_eff))


def price_impact_pct(mid_price: Fraction, execution_price: Fraction) -> Decimal:
    """|mid - exec| / mid, as a percent."""
    if mid_price <= 0:
        raise ValueError("mid price must be positive")
    return to_decimal(abs(mid_price - execution_price) / mid_price * 100)


def human_ratio(out_atomic: int, out_decimals: int, in_atomic: int, in_decimals: int) -> Fraction:
    """(out / 10^out_decimals) / (in / 10^in_decimals) as an exact Fraction."""
    return Fraction(out_atomic * 10 ** in_decimals, in_atomic * 10 ** out_decimals)


def cpmm_quote(
    pool: Pool,
    input_mint: str,
    dx_atomic: int,
    slippage_bps: int,
    provenance: Provenance = Provenance.APPROXIMATED,
    dex_type: str = "cpmm"
) -> Quote:
    """
    Quote a swap on hydrated reserves with the constant-product formula.

    Raises:
        QuoteFailure: reserves missing / non-positive, fee missing, decimals missing,
            or input mint not part of the pool.
    """
    if not pool.has_mint(input_mint):
        raise QuoteFailure(FailureReason.MINT_NOT_IN_POOL)
    if pool.x_reserve is None or pool.y_reserve is None:
        raise QuoteFailure(FailureReason.RESERVES_MISSING)
    if pool.x_reserve <= 0 or pool.y_reserve <= 0:
        raise QuoteFailure(FailureReason.RESERVES_ZERO)
    if pool.fee_rate is None:
        raise QuoteFailure(FailureReason.FEE_MISSING)
    if not 0 <= pool.fee_rate < 1:
        raise QuoteFailure(FailureReason.FEE_INVALID, f"fee_rate {pool.fee_rate} outside [0, 1)")

    output_mint = pool.other_mint(input_mint)
    in_decimals = decimals_for(pool, input_mint)
    out_decimals = decimals_for(pool, output_mint)
    if in_decimals is None or out_decimals is None:
        raise QuoteFailure(FailureReason.DECIMALS_MISSING)

    swap_for_y = input_mint == pool.base_mint
    if swap_for_y:
        reserve_in, reserve_out = pool.x_reserve, pool.y_reserve
    else:
        reserve_in, reserve_out = pool.y_reserve, pool.x_reserve

    dy = cpmm_amount_out(dx_atomic, reserve_in, reserve_out, pool.fee_rate)
    mid = human_ratio(reserve_out, out_decimals, reserve_in, in_decimals)
    execution = human_ratio(dy, out_decimals, dx_atomic, in_decimals)

    return Quote(
        in_atomic=dx_atomic,
        out_atomic=dy,
        min_out_atomic=apply_slippage(dy, slippage_bps),
        execution_price=to_decimal(execution),
        price_impact_pct=price_impact_pct(mid, execution),
        fee_rate=pool.fee_rate,
        provenance=provenance,
        pool_address=pool.address,
        dex_type=dex_type,
        swap_for_y=swap_for_y,
    )
