"""
Main entry point for the triangular arbitrage engine.
"""
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .config import PROJECT_ROOT, EngineConfig, TriangleConfig, load_config, load_wallet
from .exceptions import ArbitrageError, OrientationError
from .executor import RouteExecutor
from .flashloan import ComputeBudget, FlashloanInstructionBuilder
from .jupiter_client import JupiterClient
from .leg_simulator import LegSimulator
from .liquidity_sdk import JupiterLiquiditySdk
from .pools import Pool, pool_from_record
from .rate_limiter import RateLimiter
from .reserve_hydrator import HydrationProgress, ReserveHydrator, validate_pools
from .route_simulator import RouteResult, TriangularRouteSimulator
from .solana_client import SolanaClient
from .triangle import orient_triangle
from .utils import get_terminal_colors, short_addr

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('arbitrage_bot.log')
        ]
    )


def load_pools(path: Path) -> List[Pool]:
    """
    Load pool records from a JSON list (or {"pools": [...]}).

    Records that cannot be normalized are skipped with a warning.
    """
    with open(path, 'r') as f:
        data = json.load(f)
    records = data.get('pools', []) if isinstance(data, dict) else data

    pools = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning(f"Skipping pool record of type {type(record).__name__}")
            continue
        try:
            pools.append(pool_from_record(record))
        except (ArbitrageError, ValueError, TypeError) as e:
            logger.warning(f"Skipping pool record {record.get('address', '?')}: {e}")
    logger.info(f"Loaded {len(pools)}/{len(records)} pool records from {path}")
    return pools


def _log_progress(progress: HydrationProgress):
    if progress.current == progress.total or progress.current % 100 == 0:
        logger.info(
            f"Hydration progress {progress.current}/{progress.total} "
            f"(ok={progress.hydrated}, failed={progress.failed})"
        )


async def simulate_triangles(
    simulator: TriangularRouteSimulator,
    pools_by_address: dict,
    triangles: Sequence[TriangleConfig],
    config: EngineConfig,
    execute: bool = False
) -> List[RouteResult]:
    """Simulate every configured triangle; unknown pools or open cycles are skipped."""
    results = []
    for triangle in triangles:
        missing = [a for a in triangle.pools if a not in pools_by_address]
        if missing:
            logger.warning(
                f"Skipping triangle {[short_addr(a) for a in triangle.pools]}: "
                f"pools not loaded or invalid: {[short_addr(a) for a in missing]}"
            )
            continue
        pools = [pools_by_address[a] for a in triangle.pools]

        if triangle.tokens:
            token_a, token_b, token_c = triangle.tokens
        else:
            try:
                token_a, token_b, token_c = orient_triangle(*pools).in_mints
            except OrientationError as e:
                logger.warning(f"Skipping triangle: {e}")
                continue

        result = await simulator.simulate(
            pools,
            token_a,
            token_b,
            token_c,
            triangle.dx_atomic or config.dx_atomic,
            max_impact_pct=config.max_impact_pct,
            execute=execute
        )
        if not result.ok:
            logger.info(
                f"Triangle {short_addr(token_a)} -> {short_addr(token_b)} -> {short_addr(token_c)} "
                f"rejected: {result.reason}{f' ({result.detail})' if result.detail else ''}"
            )
        results.append(result)
    return results


async def main(mode: str = 'scan', flashloan_builder: Optional[FlashloanInstructionBuilder] = None):
    """
    Main function.

    Args:
        mode: scan (quotes only), simulate (execution-grade quotes, no sends) or live
        flashloan_builder: Flashloan provider used in live mode
    """
    setup_logging()
    logger.info(f"Starting triangular arbitrage engine, mode: {mode.upper()}")

    raw_config = load_config()
    config = EngineConfig.from_sources(raw_config)

    wallet = load_wallet()
    if wallet is None and mode != 'scan':
        logger.error("Wallet required for simulate/live modes")
        return

    rpc_limiter = RateLimiter(min_interval_ms=config.rpc_min_interval_ms)
    solana = SolanaClient(config.rpc_url, wallet, fallback_rpc_url=config.fallback_rpc_url)
    jupiter = JupiterClient(config.jupiter_api_url, api_key=config.jupiter_api_key, timeout=config.quote_timeout)

    try:
        pools_path = Path(config.pools_file)
        if not pools_path.is_absolute():
            pools_path = PROJECT_ROOT / pools_path
        pools = load_pools(pools_path)

        hydrator = ReserveHydrator(solana, rate_limiter=rpc_limiter, batch_size=config.hydration_batch_size)
        pools = await hydrator.hydrate_decimals(pools)
        pools = await hydrator.hydrate(pools, force_refresh=config.force_refresh, progress_callback=_log_progress)
        report = validate_pools(pools)
        pools_by_address = {p.address: p for p in report.valid}
        logger.info(f"{colors['GREEN']}{len(report.valid)}{colors['RESET']} pools ready for simulation")

        user_key = str(wallet.pubkey()) if wallet is not None and mode != 'scan' else None
        sdk = JupiterLiquiditySdk(jupiter, user_public_key=user_key)
        leg_simulator = LegSimulator(
            sdk=sdk,
            allow_math_fallback=config.allow_math_fallback,
            slippage_bps=config.slippage_bps,
            quote_timeout=config.quote_timeout
        )

        executor = None
        if mode == 'live':
            logger.warning("=" * 60)
            logger.warning("LIVE MODE ENABLED - REAL TRANSACTIONS WILL BE SENT!")
            logger.warning("=" * 60)
            if flashloan_builder is None:
                logger.warning("No flashloan provider configured; profitable routes will fail at planning")
            executor = RouteExecutor(
                solana,
                wallet,
                sdk,
                flashloan_builder,
                broadcast_options=config.broadcast,
                compute_budget=ComputeBudget(
                    unit_limit=config.compute_unit_limit,
                    unit_price_micro_lamports=config.compute_unit_price_micro_lamports
                )
            )

        simulator = TriangularRouteSimulator(leg_simulator, executor=executor)
        if not config.triangles:
            logger.warning("No triangles configured in config.json")
        results = await simulate_triangles(
            simulator, pools_by_address, config.triangles, config, execute=(mode == 'live')
        )

        profitable = [r for r in results if r.ok and r.profit_atomic > 0]
        logger.info(
            f"Simulated {len(results)} triangles, {colors['GREEN']}{len(profitable)}{colors['RESET']} profitable"
        )
        for result in profitable:
            logger.info(
                f"  profit {result.profit_pct:.4f}% ({result.profit_atomic} atomic), "
                f"verified={result.is_sdk_verified}"
                f"{f', tx={result.tx_signature}' if result.tx_signature else ''}"
                f"{f', exec_error={result.exec_error}' if result.exec_error else ''}"
            )
        logger.info(f"Leg metrics: {leg_simulator.metrics.snapshot()}")

    finally:
        await jupiter.close()
        await solana.close()


if __name__ == '__main__':
    asyncio.run(main())
