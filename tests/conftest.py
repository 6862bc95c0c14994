"""
Pytest configuration and fixtures for the triangular arbitrage engine tests.
"""
from fractions import Fraction

import pytest
from unittest.mock import AsyncMock
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from triarb.pools import ClmmPool, CpmmPool, DlmmPool, WhirlpoolPool


@pytest.fixture
def mock_keypair():
    """Create a keypair for testing."""
    return Keypair()


@pytest.fixture
def mock_solana_client():
    """Create a mock SolanaClient for testing."""
    client = AsyncMock()
    return client


@pytest.fixture
def sol_mint():
    """SOL mint address."""
    return "So11111111111111111111111111111111111111112"


@pytest.fixture
def usdc_mint():
    """USDC mint address."""
    return "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def jup_mint():
    """JUP mint address."""
    return "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"


@pytest.fixture
def bonk_mint():
    """BONK mint address."""
    return "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


@pytest.fixture
def make_address():
    """Factory for fresh, valid base58 addresses."""
    def _make():
        return str(Keypair().pubkey())
    return _make


@pytest.fixture
def sol_usdc_pool(sol_mint, usdc_mint, make_address):
    """cpmm SOL/USDC at 100 USDC per SOL."""
    return CpmmPool(
        address=make_address(),
        base_mint=sol_mint,
        quote_mint=usdc_mint,
        dex="raydium",
        base_decimals=9,
        quote_decimals=6,
        fee_rate=Fraction(3, 1000),
        x_reserve=10_000 * 10 ** 9,
        y_reserve=1_000_000 * 10 ** 6,
        is_math_ready=True
    )


@pytest.fixture
def usdc_jup_pool(usdc_mint, jup_mint, make_address):
    """cpmm USDC/JUP at 2 JUP per USDC."""
    return CpmmPool(
        address=make_address(),
        base_mint=usdc_mint,
        quote_mint=jup_mint,
        dex="raydium",
        base_decimals=6,
        quote_decimals=6,
        fee_rate=Fraction(3, 1000),
        x_reserve=1_000_000 * 10 ** 6,
        y_reserve=2_000_000 * 10 ** 6,
        is_math_ready=True
    )


@pytest.fixture
def jup_sol_pool(jup_mint, sol_mint, make_address):
    """cpmm JUP/SOL at 0.005 SOL per JUP."""
    return CpmmPool(
        address=make_address(),
        base_mint=jup_mint,
        quote_mint=sol_mint,
        dex="raydium",
        base_decimals=6,
        quote_decimals=9,
        fee_rate=Fraction(3, 1000),
        x_reserve=2_000_000 * 10 ** 6,
        y_reserve=10_000 * 10 ** 9,
        is_math_ready=True
    )


@pytest.fixture
def triangle_pools(sol_usdc_pool, usdc_jup_pool, jup_sol_pool):
    """SOL -> USDC -> JUP -> SOL."""
    return [sol_usdc_pool, usdc_jup_pool, jup_sol_pool]


@pytest.fixture
def dlmm_pool(sol_mint, usdc_mint, make_address):
    return DlmmPool(
        address=make_address(),
        base_mint=sol_mint,
        quote_mint=usdc_mint,
        dex="meteora",
        base_decimals=9,
        quote_decimals=6,
        fee_rate=Fraction(25, 10000),
        x_reserve=5_000 * 10 ** 9,
        y_reserve=500_000 * 10 ** 6,
        bin_step=25,
        mid_price=Fraction(100)
    )


@pytest.fixture
def clmm_pool(sol_mint, usdc_mint, make_address):
    return ClmmPool(
        address=make_address(),
        base_mint=sol_mint,
        quote_mint=usdc_mint,
        dex="raydium",
        base_decimals=9,
        quote_decimals=6,
        fee_rate=Fraction(5, 10000),
        tick_spacing=10
    )


@pytest.fixture
def whirlpool_pool(sol_mint, usdc_mint, make_address):
    return WhirlpoolPool(
        address=make_address(),
        base_mint=sol_mint,
        quote_mint=usdc_mint,
        dex="orca",
        base_decimals=9,
        quote_decimals=6,
        fee_rate=Fraction(3, 10000),
        tick_spacing=64
    )


@pytest.fixture
def token_account_data():
    """Factory for raw SPL token account bytes holding a given amount."""
    def _make(amount: int) -> bytes:
        data = bytearray(165)
        data[0:32] = bytes(Pubkey.default())
        data[64:72] = amount.to_bytes(8, "little")
        return bytes(data)
    return _make
