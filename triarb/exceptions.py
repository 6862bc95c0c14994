"""
Error taxonomy and failure reason codes for the arbitrage engine.

Leg and route failures travel as result objects carrying a FailureReason;
exceptions are raised at adapter, planner and broadcaster boundaries.
"""
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Stable failure codes reported on LegResult / RouteResult."""
    NEED_3_POOLS = "need-3-pools"
    MISSING_MINTS = "missing-mints"
    MISSING_DX = "missing-dx"
    MISSING_MAX_IMPACT = "missing-max-impact"
    INVALID_TRIANGLE = "invalid-triangle"
    UNREALISTIC_PROFIT = "unrealistic-profit"
    INVALID_AMOUNT = "invalid-amount"
    MINT_NOT_IN_POOL = "mint-not-in-pool"
    NO_SIMULATION_METHOD = "no-simulation-method"
    RESERVES_MISSING = "reserves-missing"
    RESERVES_ZERO = "reserves-zero"
    FEE_MISSING = "fee-missing"
    FEE_INVALID = "fee-invalid"
    DECIMALS_MISSING = "decimals-missing"
    ADAPTER_UNAVAILABLE = "adapter-unavailable"
    INCOMPLETE_QUOTE = "incomplete-quote"
    QUOTE_TIMEOUT = "quote-timeout"
    PRICE_IMPACT_EXCEEDED = "price-impact-exceeded"
    CLMM_SDK_FAILED = "clmm-sdk-failed"
    WHIRLPOOL_SDK_FAILED = "whirlpool-sdk-failed"


class ArbitrageError(Exception):
    """Base class for all engine errors."""


class InputValidationError(ArbitrageError):
    """Malformed caller input or configuration."""


class OrientationError(ArbitrageError):
    """Three pools do not form a closed cycle."""


class QuoteFailure(ArbitrageError):
    """An adapter could not produce a complete quote."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason.value if isinstance(reason, FailureReason) else reason
        super().__init__(message or self.reason)


class AdapterInitError(QuoteFailure):
    """Adapter could not be initialised for a pool."""


class UnrealisticProfitError(ArbitrageError):
    """Computed profit is outside the plausible band."""


class RateLimitBackoff(ArbitrageError):
    """Upstream asked us to slow down; carries the delay to honour."""

    def __init__(self, delay_ms: int, message: Optional[str] = None):
        self.delay_ms = delay_ms
        super().__init__(message or f"rate limited, backing off {delay_ms}ms")


class ExecutionError(ArbitrageError):
    """Flashloan planning, signing, sending or confirmation failed."""
