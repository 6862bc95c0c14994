"""
Pool records and the pool classifier.

Pool records arrive as loosely-typed dicts from loaders and DEX APIs. They are
turned into a frozen, tagged record here, once, and every downstream component
dispatches on ``pool.variant``. The ``x_*`` fields always refer to the base
mint side and the ``y_*`` fields to the quote mint side.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class Variant(str, Enum):
    """Liquidity pool family."""
    CPMM = "cpmm"
    DLMM = "dlmm"
    CLMM = "clmm"
    WHIRLPOOL = "whirlpool"


# Variants whose quotes are only trusted from the DEX SDK (no closed-form fallback)
CONCENTRATED_VARIANTS = frozenset({Variant.CLMM, Variant.WHIRLPOOL})

# Variants that need hydrated reserves to be quoted by closed-form math
RESERVE_BACKED_VARIANTS = frozenset({Variant.CPMM, Variant.DLMM})


@dataclass(frozen=True)
class Pool:
    """Fields shared by every pool variant."""
    address: str
    base_mint: str
    quote_mint: str
    dex: str = "unknown"
    base_decimals: Optional[int] = None
    quote_decimals: Optional[int] = None
    fee_rate: Optional[Fraction] = None
    x_reserve: Optional[int] = None
    y_reserve: Optional[int] = None
    x_vault: Optional[str] = None
    y_vault: Optional[str] = None
    reserve_source: Optional[str] = None  # 'fresh', 'cache', 'partial', 'none'
    is_math_ready: bool = False
    mid_price: Optional[Fraction] = None  # quote per base, human units

    variant: ClassVar[Variant]

    def has_mint(self, mint: str) -> bool:
        return mint == self.base_mint or mint == self.quote_mint

    def other_mint(self, mint: str) -> Optional[str]:
        if mint == self.base_mint:
            return self.quote_mint
        if mint == self.quote_mint:
            return self.base_mint
        return None


@dataclass(frozen=True)
class CpmmPool(Pool):
    variant: ClassVar[Variant] = Variant.CPMM


@dataclass(frozen=True)
class DlmmPool(Pool):
    bin_step: Optional[int] = None
    variant: ClassVar[Variant] = Variant.DLMM


@dataclass(frozen=True)
class ClmmPool(Pool):
    tick_spacing: Optional[int] = None
    variant: ClassVar[Variant] = Variant.CLMM


@dataclass(frozen=True)
class WhirlpoolPool(Pool):
    tick_spacing: Optional[int] = None
    variant: ClassVar[Variant] = Variant.WHIRLPOOL


POOL_CLASSES: Dict[Variant, Type[Pool]] = {
    Variant.CPMM: CpmmPool,
    Variant.DLMM: DlmmPool,
    Variant.CLMM: ClmmPool,
    Variant.WHIRLPOOL: WhirlpoolPool,
}


def _first(record: Dict[str, Any], *keys: str) -> Any:
    """Return the first present, non-empty value among keys (also looks in record['raw'])."""
    raw = record.get("raw") if isinstance(record.get("raw"), dict) else {}
    for source in (record, raw):
        for key in keys:
            value = source.get(key)
            if value is not None and value != "":
                return value
    return None


def normalize_dex(record: Dict[str, Any]) -> str:
    """Collapse DEX names to 'meteora', 'orca', 'raydium', the lower-cased name, or 'unknown'."""
    dex = str(_first(record, "dex", "dexName") or "").lower()
    if not dex:
        return "unknown"
    for family in ("meteora", "orca", "raydium"):
        if family in dex:
            return family
    return dex


def _variant_from_type(type_str: str) -> Optional[Variant]:
    t = type_str.lower()
    if "dlmm" in t:
        return Variant.DLMM
    if "whirlpool" in t or "orca" in t:
        return Variant.WHIRLPOOL
    if "clmm" in t:
        return Variant.CLMM
    if "cpmm" in t or "amm" in t or "constant" in t:
        return Variant.CPMM
    return None


def classify(record: Dict[str, Any]) -> Variant:
    """
    Classify a raw pool record into a Variant.

    Order: explicit type field, then DEX-name heuristic, then structural
    fields (bin step means dlmm, tick spacing means whirlpool), then cpmm.
    Total: unrecognised input yields cpmm, never an exception.
    """
    if not isinstance(record, dict):
        return Variant.CPMM

    explicit = _first(record, "type", "poolType", "ammType")
    if explicit is not None:
        variant = _variant_from_type(str(explicit))
        if variant is not None:
            return variant

    dex = normalize_dex(record)
    if dex == "meteora":
        return Variant.DLMM
    if dex == "orca":
        return Variant.WHIRLPOOL

    if _first(record, "binStep", "bin_step") is not None:
        return Variant.DLMM
    if _first(record, "tickSpacing", "tick_spacing") is not None:
        return Variant.WHIRLPOOL

    return Variant.CPMM


def _parse_atomic(value: Any) -> Optional[int]:
    """Atomic integers only; human decimals like '33469.55' are rejected."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if not s or not s.lstrip("-").isdigit():
        return None
    return int(s)


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_fraction(value: Any) -> Optional[Fraction]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Fraction(str(value).strip())
    except (ValueError, ZeroDivisionError):
        return None


def _parse_fee(record: Dict[str, Any]) -> Optional[Fraction]:
    bps = _parse_fraction(_first(record, "feeBps", "tradeFeeBps", "fee_bps"))
    if bps is not None:
        return bps / 10000
    return _parse_fraction(_first(record, "feeRate", "tradeFeeRate", "fee"))


def _parse_vaults(record: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    vaults = record.get("vaults") if isinstance(record.get("vaults"), dict) else {}
    x_vault = (vaults.get("xVault") or vaults.get("aVault")
               or _first(record, "xVault", "vaultX", "vaultA", "tokenVaultA", "vault_x", "vault_a"))
    y_vault = (vaults.get("yVault") or vaults.get("bVault")
               or _first(record, "yVault", "vaultY", "vaultB", "tokenVaultB", "vault_y", "vault_b"))
    return (str(x_vault) if x_vault else None, str(y_vault) if y_vault else None)


def pool_from_record(record: Dict[str, Any]) -> Pool:
    """
    Build a tagged pool record from a loader dict.

    Missing numeric fields stay None; nothing is defaulted here. Validation
    (see reserve_hydrator.validate_pools) decides what is usable.
    """
    variant = classify(record)
    cls = POOL_CLASSES[variant]
    x_vault, y_vault = _parse_vaults(record)

    kwargs: Dict[str, Any] = dict(
        address=str(_first(record, "address", "poolAddress", "id") or ""),
        base_mint=str(_first(record, "baseMint", "mint_x", "mintA", "tokenA") or ""),
        quote_mint=str(_first(record, "quoteMint", "mint_y", "mintB", "tokenB") or ""),
        dex=normalize_dex(record),
        base_decimals=_parse_int(_first(record, "baseDecimals", "decimalsA")),
        quote_decimals=_parse_int(_first(record, "quoteDecimals", "decimalsB")),
        fee_rate=_parse_fee(record),
        x_reserve=_parse_atomic(_first(record, "xReserve", "reserve_x", "x_reserve")),
        y_reserve=_parse_atomic(_first(record, "yReserve", "reserve_y", "y_reserve")),
        x_vault=x_vault,
        y_vault=y_vault,
        reserve_source=_first(record, "reserveSource"),
        mid_price=_parse_fraction(_first(record, "midPrice", "price")),
    )
    if variant is Variant.DLMM:
        kwargs["bin_step"] = _parse_int(_first(record, "binStep", "bin_step"))
    elif variant in CONCENTRATED_VARIANTS:
        kwargs["tick_spacing"] = _parse_int(_first(record, "tickSpacing", "tick_spacing"))

    pool = cls(**kwargs)
    logger.debug(f"Classified pool {pool.address[:8]}... as {variant.value} (dex={pool.dex})")
    return pool


def has_valid_reserves(pool: Pool) -> bool:
    """Both reserves present and strictly positive."""
    return (
        pool.x_reserve is not None and pool.y_reserve is not None
        and pool.x_reserve > 0 and pool.y_reserve > 0
    )


def decimals_for(pool: Pool, mint: str) -> Optional[int]:
    if mint == pool.base_mint:
        return pool.base_decimals
    if mint == pool.quote_mint:
        return pool.quote_decimals
    return None
