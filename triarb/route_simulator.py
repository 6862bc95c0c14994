"""
Triangular route simulator: three chained legs, profit guard, optional execution.
"""
import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from numbers import Real
from typing import TYPE_CHECKING, List, Optional, Sequence

from .exceptions import ExecutionError, FailureReason, OrientationError, UnrealisticProfitError
from .leg_simulator import LegResult, LegSimulator
from .pools import Pool
from .triangle import orient_triangle
from .utils import get_terminal_colors, short_addr

if TYPE_CHECKING:
    from .executor import RouteExecutor

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

MAX_PLAUSIBLE_PROFIT_PCT = Decimal(50)


@dataclass
class RouteResult:
    """Outcome of one triangular simulation (and execution, when requested)."""
    ok: bool
    reason: Optional[str] = None
    legs: List[LegResult] = field(default_factory=list)
    dx_atomic: Optional[int] = None
    out_atomic: Optional[int] = None
    profit_atomic: Optional[int] = None
    profit_pct: Optional[Decimal] = None
    is_sdk_verified: bool = False
    tx_signature: Optional[str] = None
    exec_error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def vias(self) -> List[Optional[str]]:
        return [leg.via for leg in self.legs]


def compute_profit_pct(profit_atomic: int, dx_atomic: int) -> Decimal:
    """profit / dx * 100, exact for terminating ratios."""
    with localcontext() as ctx:
        ctx.prec = 40
        return Decimal(profit_atomic) / Decimal(dx_atomic) * 100


def check_profit_plausible(profit_pct: Decimal):
    """Raise UnrealisticProfitError for NaN/infinite profit or more than 50% either way."""
    if not profit_pct.is_finite() or abs(profit_pct) > MAX_PLAUSIBLE_PROFIT_PCT:
        raise UnrealisticProfitError(f"Unrealistic profit {profit_pct:.4f}%")


def _is_valid_max_impact(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, Decimal):
        return not value.is_nan()
    if isinstance(value, Real):
        return not math.isnan(value)
    return False


class TriangularRouteSimulator:
    """Runs A -> B -> C -> A through three pools, each leg fed by the previous output."""

    def __init__(self, leg_simulator: LegSimulator, executor: Optional["RouteExecutor"] = None):
        self.leg_simulator = leg_simulator
        self.executor = executor

    async def simulate(
        self,
        pools: Sequence[Pool],
        token_a: str,
        token_b: str,
        token_c: str,
        dx_atomic: int,
        max_impact_pct=5,
        execute: bool = False
    ) -> RouteResult:
        """
        Simulate a triangular route and optionally execute it.

        Args:
            pools: [pool A/B, pool B/C, pool C/A]
            token_a: Start (and loan) mint
            token_b: Second mint
            token_c: Third mint
            dx_atomic: Input amount of token_a in atomic units
            max_impact_pct: Per-leg price impact ceiling in percent
            execute: Build and broadcast the flashloan when profitable

        Returns:
            RouteResult; failures carry a reason code and whatever legs ran
        """
        if pools is None or len(pools) != 3:
            return RouteResult(ok=False, reason=FailureReason.NEED_3_POOLS.value)
        if not all(isinstance(t, str) and t for t in (token_a, token_b, token_c)):
            return RouteResult(ok=False, reason=FailureReason.MISSING_MINTS.value)
        if not isinstance(dx_atomic, int) or isinstance(dx_atomic, bool) or dx_atomic <= 0:
            return RouteResult(ok=False, reason=FailureReason.MISSING_DX.value)
        if not _is_valid_max_impact(max_impact_pct):
            return RouteResult(ok=False, reason=FailureReason.MISSING_MAX_IMPACT.value)

        try:
            orient_triangle(pools[0], pools[1], pools[2])
        except OrientationError as e:
            return RouteResult(
                ok=False, reason=FailureReason.INVALID_TRIANGLE.value, dx_atomic=dx_atomic, detail=str(e)
            )

        max_impact = Decimal(str(max_impact_pct))
        hops = ((pools[0], token_a, token_b), (pools[1], token_b, token_c), (pools[2], token_c, token_a))
        legs: List[LegResult] = []
        amount_in = dx_atomic

        for index, (pool, input_mint, output_mint) in enumerate(hops, 1):
            leg = await self.leg_simulator.simulate_leg(pool, input_mint, output_mint, amount_in, prefer_sdk=True)
            legs.append(leg)
            if not leg.ok:
                logger.debug(f"Route aborted at leg {index}: {leg.reason}")
                return RouteResult(ok=False, reason=leg.reason, legs=legs, dx_atomic=dx_atomic, detail=leg.detail)
            if leg.quote.price_impact_pct > max_impact:
                logger.debug(
                    f"Route aborted at leg {index}: impact {leg.quote.price_impact_pct:.4f}% > {max_impact}%"
                )
                return RouteResult(
                    ok=False,
                    reason=FailureReason.PRICE_IMPACT_EXCEEDED.value,
                    legs=legs,
                    dx_atomic=dx_atomic,
                    detail=f"leg {index} impact {leg.quote.price_impact_pct}% exceeds {max_impact}%"
                )
            amount_in = leg.quote.out_atomic

        out_atomic = legs[2].quote.out_atomic
        profit_atomic = out_atomic - dx_atomic
        profit_pct = compute_profit_pct(profit_atomic, dx_atomic)
        is_sdk_verified = any(leg.is_verified for leg in legs)

        try:
            check_profit_plausible(profit_pct)
        except UnrealisticProfitError as e:
            logger.warning(
                f"{colors['RED']}{e}{colors['RESET']} on "
                f"{' -> '.join(short_addr(p.address) for p in pools)}; likely stale pool data"
            )
            return RouteResult(
                ok=False,
                reason=FailureReason.UNREALISTIC_PROFIT.value,
                legs=legs,
                dx_atomic=dx_atomic,
                out_atomic=out_atomic,
                profit_atomic=profit_atomic,
                profit_pct=profit_pct,
                is_sdk_verified=is_sdk_verified,
                detail=str(e)
            )

        result = RouteResult(
            ok=True,
            legs=legs,
            dx_atomic=dx_atomic,
            out_atomic=out_atomic,
            profit_atomic=profit_atomic,
            profit_pct=profit_pct,
            is_sdk_verified=is_sdk_verified
        )
        profit_color = colors['GREEN'] if profit_atomic > 0 else colors['RED']
        logger.info(
            f"Route {colors['CYAN']}{short_addr(token_a)} -> {short_addr(token_b)} -> "
            f"{short_addr(token_c)}{colors['RESET']}: in={dx_atomic} out={out_atomic} "
            f"profit={profit_color}{profit_pct:.4f}%{colors['RESET']} "
            f"verified={is_sdk_verified} via={','.join(result.vias)}"
        )

        if execute:
            await self._execute(result, token_a)
        return result

    async def _execute(self, result: RouteResult, loan_mint: str):
        if self.executor is None:
            logger.warning("Execution requested but no executor is configured; simulation only")
            return
        if result.profit_atomic is None or result.profit_atomic <= 0:
            logger.info(f"{colors['DIM']}Not executing: route is not profitable{colors['RESET']}")
            return
        try:
            result.tx_signature = await self.executor.execute(result.legs, loan_mint, result.dx_atomic)
            logger.info(f"{colors['GREEN']}Flashloan route landed:{colors['RESET']} {result.tx_signature}")
        except ExecutionError as e:
            result.exec_error = str(e)
            logger.error(f"{colors['RED']}Execution failed:{colors['RESET']} {e}")
