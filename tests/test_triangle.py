"""
Tests for triangle.py
"""
from dataclasses import replace

import pytest

from triarb.exceptions import OrientationError
from triarb.triangle import orient_triangle, solve_triangle


class TestSolveTriangle:
    """Tests for the orientation solver."""

    def test_closes_from_base_mint(self, triangle_pools, sol_mint, usdc_mint, jup_mint):
        triangle = solve_triangle(*triangle_pools)

        assert triangle is not None
        assert triangle.start_mint == sol_mint
        assert triangle.in_mints == (sol_mint, usdc_mint, jup_mint)
        assert triangle.out_mints == (usdc_mint, jup_mint, sol_mint)
        assert triangle.pools == tuple(triangle_pools)

    def test_closes_from_quote_mint(self, sol_usdc_pool, jup_sol_pool, usdc_jup_pool, usdc_mint, sol_mint, jup_mint):
        """SOL/USDC, JUP/SOL, USDC/JUP only closes when starting from USDC."""
        triangle = solve_triangle(sol_usdc_pool, jup_sol_pool, usdc_jup_pool)

        assert triangle is not None
        assert triangle.start_mint == usdc_mint
        assert triangle.in_mints == (usdc_mint, sol_mint, jup_mint)

    def test_reversed_pool_orientation(self, triangle_pools, sol_mint):
        """Base/quote order inside a pool does not matter."""
        flipped = [
            replace(p, base_mint=p.quote_mint, quote_mint=p.base_mint) for p in triangle_pools
        ]
        triangle = solve_triangle(*flipped)

        assert triangle is not None
        assert triangle.start_mint == sol_mint

    def test_disjoint_pools(self, sol_usdc_pool, usdc_jup_pool, bonk_mint, jup_mint):
        """A third pool that does not lead back to the start gives None."""
        bonk_pool = replace(usdc_jup_pool, base_mint=jup_mint, quote_mint=bonk_mint)

        assert solve_triangle(sol_usdc_pool, usdc_jup_pool, bonk_pool) is None

    def test_two_token_cycle_does_not_close(self, sol_usdc_pool):
        """Three pools on the same pair never close a triangle."""
        assert solve_triangle(sol_usdc_pool, sol_usdc_pool, sol_usdc_pool) is None


class TestOrientTriangle:

    def test_returns_triangle(self, triangle_pools, sol_mint):
        assert orient_triangle(*triangle_pools).start_mint == sol_mint

    def test_raises_when_open(self, sol_usdc_pool):
        with pytest.raises(OrientationError, match="closed 3-cycle"):
            orient_triangle(sol_usdc_pool, sol_usdc_pool, sol_usdc_pool)
