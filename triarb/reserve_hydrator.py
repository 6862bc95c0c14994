"""
Reserve hydration: fill in vault balances from chain state.

Snapshot-then-merge: ``hydrate`` never mutates the records it is given; it
returns new frozen records with reserves, vaults and source tags merged in.
Hydrate to completion before handing pools to simulation.

Two read stages share one RateLimiter:
  1. pool-state accounts, for dlmm/clmm/whirlpool pools that carry no vault
     addresses (vaults and mints are decoded from the program layout);
  2. SPL token vault accounts, batched with getMultipleAccounts.
"""
import asyncio
import inspect
import logging
import struct
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from .exceptions import RateLimitBackoff
from .pools import CONCENTRATED_VARIANTS, RESERVE_BACKED_VARIANTS, Pool, Variant, has_valid_reserves
from .rate_limiter import RateLimiter
from .utils import get_terminal_colors, short_addr

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

# SPL token account: mint(32) owner(32) amount(u64 LE) ...
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
TOKEN_ACCOUNT_MIN_LEN = 72
# SPL mint: mint_authority option(36) supply(u64) decimals(u8) ...
MINT_DECIMALS_OFFSET = 44

SOURCE_FRESH = "fresh"
SOURCE_CACHE = "cache"
SOURCE_PARTIAL = "partial"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class PoolStateLayout:
    """Byte offsets of (mint, vault) pairs inside a pool-state account."""
    mint_a: int
    vault_a: int
    mint_b: int
    vault_b: int

    @property
    def min_len(self) -> int:
        return max(self.mint_a, self.vault_a, self.mint_b, self.vault_b) + 32


POOL_STATE_LAYOUTS: Dict[Variant, PoolStateLayout] = {
    # Orca Whirlpool: token_mint_a, token_vault_a, token_mint_b, token_vault_b
    Variant.WHIRLPOOL: PoolStateLayout(mint_a=101, vault_a=133, mint_b=181, vault_b=213),
    # Raydium CLMM PoolState: token_mint_0/1, token_vault_0/1
    Variant.CLMM: PoolStateLayout(mint_a=73, vault_a=137, mint_b=105, vault_b=169),
    # Meteora DLMM LbPair: token_x_mint, token_y_mint, reserve_x, reserve_y
    Variant.DLMM: PoolStateLayout(mint_a=88, vault_a=152, mint_b=120, vault_b=184),
}


def decode_token_amount(data: Optional[bytes]) -> int:
    """
    Read the u64 little-endian balance of an SPL token account.

    Raises:
        ValueError: missing or short account data
    """
    if data is None:
        raise ValueError("account does not exist")
    if len(data) < TOKEN_ACCOUNT_MIN_LEN:
        raise ValueError(f"token account too short: {len(data)} bytes")
    return struct.unpack_from("<Q", data, TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]


def decode_mint_decimals(data: Optional[bytes]) -> int:
    if data is None or len(data) <= MINT_DECIMALS_OFFSET:
        raise ValueError("mint account missing or too short")
    return data[MINT_DECIMALS_OFFSET]


def decode_pool_vaults(variant: Variant, data: Optional[bytes]) -> Tuple[Tuple[str, str], Tuple[str, str]]:
    """
    Decode ((mint_a, vault_a), (mint_b, vault_b)) from a pool-state account.

    Raises:
        ValueError: unknown layout or short data
    """
    layout = POOL_STATE_LAYOUTS.get(variant)
    if layout is None:
        raise ValueError(f"no pool-state layout for {variant.value}")
    if data is None or len(data) < layout.min_len:
        raise ValueError(f"{variant.value} pool account missing or too short")

    def key_at(offset: int) -> str:
        return str(Pubkey.from_bytes(bytes(data[offset:offset + 32])))

    return (
        (key_at(layout.mint_a), key_at(layout.vault_a)),
        (key_at(layout.mint_b), key_at(layout.vault_b)),
    )


def orient_vaults(pool: Pool, decoded: Tuple[Tuple[str, str], Tuple[str, str]]) -> Tuple[str, str]:
    """
    Map decoded (mint, vault) pairs onto the record's (x_vault, y_vault).

    Raises:
        ValueError: decoded mints are not the record's base/quote mints
    """
    (mint_a, vault_a), (mint_b, vault_b) = decoded
    if mint_a == pool.base_mint and mint_b == pool.quote_mint:
        return vault_a, vault_b
    if mint_b == pool.base_mint and mint_a == pool.quote_mint:
        return vault_b, vault_a
    raise ValueError(f"on-chain mints {mint_a}/{mint_b} do not match pool record")


def is_rate_limit_error(error: BaseException) -> bool:
    """True for HTTP 429 / 'too many requests' anywhere in the exception chain."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        response = getattr(current, "response", None)
        if getattr(response, "status_code", None) == 429:
            return True
        text = str(current).lower()
        if "429" in text or "too many requests" in text or "rate limit" in text:
            return True
        current = current.__cause__ or current.__context__
    return False


def _is_valid_pubkey(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        Pubkey.from_string(address)
        return True
    except ValueError:
        return False


def is_math_ready(pool: Pool) -> bool:
    """cpmm/dlmm need real reserves; clmm/whirlpool quote live and are ready by policy."""
    if pool.variant in CONCENTRATED_VARIANTS:
        return True
    return has_valid_reserves(pool)


@dataclass
class HydrationProgress:
    current: int
    total: int
    hydrated: int
    failed: int


@dataclass
class HydrationStats:
    total: int = 0
    hydrated: int = 0
    cached: int = 0
    partial: int = 0
    failed: int = 0
    by_variant: Dict[str, int] = field(default_factory=dict)


@dataclass
class ValidationReport:
    valid: List[Pool]
    issues: Dict[str, int]

    @property
    def dropped(self) -> int:
        return sum(self.issues.values())


def validate_pools(pools: Iterable[Pool]) -> ValidationReport:
    """
    Keep only pools the simulator can use.

    Issue keys: noAddress, noMints, sameMints, noDecimals, badFee (outside [0, 1)),
    noReserves (cpmm/dlmm).
    """
    valid: List[Pool] = []
    issues: Counter = Counter()
    for pool in pools:
        if not pool.address:
            issues["noAddress"] += 1
        elif not pool.base_mint or not pool.quote_mint:
            issues["noMints"] += 1
        elif pool.base_mint == pool.quote_mint:
            issues["sameMints"] += 1
        elif pool.base_decimals is None or pool.quote_decimals is None:
            issues["noDecimals"] += 1
        elif pool.fee_rate is not None and not 0 <= pool.fee_rate < 1:
            issues["badFee"] += 1
        elif pool.variant in RESERVE_BACKED_VARIANTS and not has_valid_reserves(pool):
            issues["noReserves"] += 1
        else:
            valid.append(pool)
    if issues:
        logger.info(f"Validation dropped {sum(issues.values())} pools: {dict(issues)}")
    return ValidationReport(valid=valid, issues=dict(issues))


ProgressCallback = Callable[[HydrationProgress], object]


class ReserveHydrator:
    """Batched, rate-limited reserve reader."""

    def __init__(
        self,
        solana_client,
        rate_limiter: Optional[RateLimiter] = None,
        batch_size: int = 100,
        max_retries: int = 3
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.solana = solana_client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.stats = HydrationStats()

    async def _read_batch(self, addresses: List[str]) -> List[Optional[bytes]]:
        await self.rate_limiter.acquire()
        try:
            data = await self.solana.get_multiple_account_data(addresses)
        except Exception as e:
            if is_rate_limit_error(e):
                raise RateLimitBackoff(self.rate_limiter.on_rate_limited()) from e
            raise
        self.rate_limiter.on_success()
        return data

    async def _fetch_batch(self, addresses: List[str]) -> List[Optional[bytes]]:
        """One getMultipleAccounts call, retried on rate limits."""
        attempt = 0
        while True:
            try:
                return await self._read_batch(addresses)
            except RateLimitBackoff as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Batch of {len(addresses)} accounts rate limited, "
                    f"retry {attempt}/{self.max_retries} after {e.delay_ms}ms"
                )

    async def iter_batches(
        self,
        addresses: Sequence[str],
        batch_size: Optional[int] = None
    ) -> AsyncIterator[Tuple[List[str], Optional[List[Optional[bytes]]]]]:
        """
        Read accounts in deduplicated fixed-size batches, yielding each as it lands.

        Batches run concurrently through the shared limiter and are yielded in
        completion order as ``(addresses, data)``. ``data`` is None for a batch
        that failed for good.
        """
        batch_size = batch_size or self.batch_size
        unique = list(dict.fromkeys(a for a in addresses if a))
        batches = [unique[i:i + batch_size] for i in range(0, len(unique), batch_size)]

        async def run(index: int, batch: List[str]):
            try:
                return batch, await self._fetch_batch(batch)
            except Exception as e:
                logger.error(f"{colors['RED']}Account batch {index} failed:{colors['RESET']} {e}")
                return batch, None

        tasks = [asyncio.ensure_future(run(i, b)) for i, b in enumerate(batches)]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                task.cancel()

    async def fetch_accounts(self, addresses: Sequence[str], batch_size: Optional[int] = None) -> Dict[str, Optional[bytes]]:
        """Read accounts in batches. Addresses of a batch that failed for good are absent from the result."""
        accounts: Dict[str, Optional[bytes]] = {}
        async for batch, data in self.iter_batches(addresses, batch_size):
            if data is not None:
                accounts.update(zip(batch, data))
        return accounts

    async def _report(self, callback: Optional[ProgressCallback], progress: HydrationProgress):
        if callback is None:
            return
        result = callback(progress)
        if inspect.isawaitable(result):
            await result

    async def _complete(
        self,
        result: List[Optional[Pool]],
        index: int,
        pool: Pool,
        progress: HydrationProgress,
        callback: Optional[ProgressCallback]
    ):
        """Store a finished pool and report progress; usable pools count as hydrated."""
        result[index] = pool
        progress.current += 1
        if pool.is_math_ready:
            progress.hydrated += 1
        else:
            progress.failed += 1
        await self._report(callback, replace(progress))

    async def hydrate(
        self,
        pools: Sequence[Pool],
        batch_size: Optional[int] = None,
        force_refresh: bool = False,
        progress_callback: Optional[ProgressCallback] = None
    ) -> List[Pool]:
        """
        Hydrate reserves for pools lacking them (or all, with force_refresh).

        Progress is reported as each pool finishes, so callbacks fire between
        batch reads rather than once at the end.

        Returns:
            New pool records, same order as the input
        """
        self.stats = HydrationStats(total=len(pools))
        progress = HydrationProgress(current=0, total=len(pools), hydrated=0, failed=0)
        result: List[Optional[Pool]] = [None] * len(pools)
        vault_queue: Dict[int, Pool] = {}
        state_queue: Dict[int, Pool] = {}
        settled: List[Tuple[int, Pool]] = []

        for i, pool in enumerate(pools):
            self.stats.by_variant[pool.variant.value] = self.stats.by_variant.get(pool.variant.value, 0) + 1
            if has_valid_reserves(pool) and not force_refresh:
                settled.append((i, replace(pool, reserve_source=SOURCE_CACHE, is_math_ready=is_math_ready(pool))))
                self.stats.cached += 1
            elif pool.x_vault and pool.y_vault:
                vault_queue[i] = pool
            elif pool.variant in POOL_STATE_LAYOUTS and _is_valid_pubkey(pool.address):
                state_queue[i] = pool
            else:
                settled.append((i, self._finish(pool, None, None)))

        logger.info(
            f"Hydrating {colors['GREEN']}{len(pools)}{colors['RESET']} pools: "
            f"{self.stats.cached} cached, {len(vault_queue)} with vaults, "
            f"{len(state_queue)} need pool-state reads"
        )
        for i, pool in settled:
            await self._complete(result, i, pool, progress, progress_callback)

        if state_queue:
            by_address: Dict[str, List[int]] = {}
            for i, pool in state_queue.items():
                by_address.setdefault(pool.address, []).append(i)
            async for batch, data in self.iter_batches(list(by_address), batch_size):
                states = dict(zip(batch, data)) if data is not None else {}
                for address in batch:
                    for i in by_address[address]:
                        pool = state_queue[i]
                        try:
                            x_vault, y_vault = orient_vaults(pool, decode_pool_vaults(pool.variant, states.get(address)))
                            vault_queue[i] = replace(pool, x_vault=x_vault, y_vault=y_vault)
                        except ValueError as e:
                            logger.debug(f"Pool-state decode failed for {short_addr(pool.address)}: {e}")
                            failed = self._finish(pool, None, None)
                            await self._complete(result, i, failed, progress, progress_callback)

        if vault_queue:
            # vault -> pools waiting on it, pool -> vaults still unread
            waiting: Dict[str, List[int]] = {}
            pending: Dict[int, int] = {}
            for i, pool in vault_queue.items():
                vaults = list(dict.fromkeys(v for v in (pool.x_vault, pool.y_vault) if _is_valid_pubkey(v)))
                pending[i] = len(vaults)
                for vault in vaults:
                    waiting.setdefault(vault, []).append(i)
                if not vaults:
                    await self._complete(result, i, self._finish(pool, None, None), progress, progress_callback)

            balances: Dict[str, Optional[bytes]] = {}
            async for batch, data in self.iter_batches(list(waiting), batch_size):
                if data is not None:
                    balances.update(zip(batch, data))
                for vault in batch:
                    for i in waiting[vault]:
                        pending[i] -= 1
                        if pending[i]:
                            continue
                        pool = vault_queue[i]
                        merged = self._finish(
                            pool,
                            self._read_balance(balances, pool.x_vault),
                            self._read_balance(balances, pool.y_vault)
                        )
                        await self._complete(result, i, merged, progress, progress_callback)

        logger.info(
            f"Hydration done: {colors['GREEN']}{self.stats.hydrated}{colors['RESET']} fresh, "
            f"{self.stats.cached} cached, {self.stats.partial} partial, "
            f"{colors['RED'] if self.stats.failed else ''}{self.stats.failed}{colors['RESET']} failed"
        )
        return result

    def _read_balance(self, balances: Dict[str, Optional[bytes]], vault: Optional[str]) -> Optional[int]:
        if not vault or vault not in balances:
            return None
        try:
            return decode_token_amount(balances[vault])
        except ValueError as e:
            logger.debug(f"Vault {short_addr(vault)} decode failed: {e}")
            return None

    def _finish(self, pool: Pool, x_amount: Optional[int], y_amount: Optional[int]) -> Pool:
        """Merge read balances into a new record and tag its source."""
        if x_amount is not None and y_amount is not None:
            merged = replace(pool, x_reserve=x_amount, y_reserve=y_amount, reserve_source=SOURCE_FRESH)
            self.stats.hydrated += 1
        elif x_amount is not None or y_amount is not None:
            merged = replace(
                pool,
                x_reserve=x_amount if x_amount is not None else pool.x_reserve,
                y_reserve=y_amount if y_amount is not None else pool.y_reserve,
                reserve_source=SOURCE_PARTIAL
            )
            self.stats.partial += 1
            self.stats.failed += 1
        elif has_valid_reserves(pool):
            # Read failed but the record still carries older reserves
            merged = replace(pool, reserve_source=SOURCE_PARTIAL)
            self.stats.partial += 1
            self.stats.failed += 1
        else:
            merged = replace(pool, reserve_source=SOURCE_NONE)
            self.stats.failed += 1
        return replace(merged, is_math_ready=is_math_ready(merged))

    async def hydrate_decimals(self, pools: Sequence[Pool], batch_size: Optional[int] = None) -> List[Pool]:
        """Fill missing base/quote decimals from the mint accounts."""
        missing = set()
        for pool in pools:
            if pool.base_decimals is None and _is_valid_pubkey(pool.base_mint):
                missing.add(pool.base_mint)
            if pool.quote_decimals is None and _is_valid_pubkey(pool.quote_mint):
                missing.add(pool.quote_mint)
        if not missing:
            return list(pools)

        mints = await self.fetch_accounts(sorted(missing), batch_size)
        decimals: Dict[str, int] = {}
        for mint, data in mints.items():
            try:
                decimals[mint] = decode_mint_decimals(data)
            except ValueError as e:
                logger.debug(f"Mint {short_addr(mint)} decode failed: {e}")

        return [
            replace(
                pool,
                base_decimals=pool.base_decimals if pool.base_decimals is not None else decimals.get(pool.base_mint),
                quote_decimals=pool.quote_decimals if pool.quote_decimals is not None else decimals.get(pool.quote_mint)
            )
            for pool in pools
        ]
