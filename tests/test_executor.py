"""
Tests for executor.py
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from solders.keypair import Keypair

from triarb.exceptions import ExecutionError
from triarb.executor import RouteExecutor
from triarb.flashloan import ComputeBudget
from triarb.solana_client import BroadcastOptions


class TestRouteExecutor:
    """Tests for RouteExecutor."""

    @pytest.fixture
    def solana(self):
        client = MagicMock()
        client.broadcast = AsyncMock(return_value="sig123")
        return client

    def test_requires_payer(self, solana):
        with pytest.raises(ExecutionError, match="payer"):
            RouteExecutor(solana, None, MagicMock(), MagicMock())

    @pytest.mark.asyncio
    async def test_plans_then_broadcasts(self, solana, sol_mint):
        payer = Keypair()
        sdk = MagicMock()
        builder = MagicMock()
        options = BroadcastOptions(skip_confirm=True)
        budget = ComputeBudget(unit_limit=400_000)
        planned = MagicMock()
        planned.signers = [payer]
        planned.last_valid_block_height = 321
        legs = [MagicMock(), MagicMock(), MagicMock()]
        route_legs = ["leg1", "leg2", "leg3"]

        executor = RouteExecutor(solana, payer, sdk, builder, broadcast_options=options, compute_budget=budget)
        with patch('triarb.executor.route_legs_from_results', return_value=route_legs) as mock_convert, \
                patch('triarb.executor.build_flashloan_tx', new_callable=AsyncMock, return_value=planned) as mock_build:
            signature = await executor.execute(legs, sol_mint, 10 ** 9)

        assert signature == "sig123"
        mock_convert.assert_called_once_with(legs)
        assert mock_build.await_args.args == (solana, payer, sol_mint, 10 ** 9, route_legs, builder, sdk)
        assert mock_build.await_args.kwargs["compute_budget"] is budget
        solana.broadcast.assert_awaited_once_with(
            planned.transaction, [payer], options=options, last_valid_block_height=321
        )

    @pytest.mark.asyncio
    async def test_planning_failure_not_broadcast(self, solana, sol_mint):
        executor = RouteExecutor(solana, Keypair(), MagicMock(), None)

        with patch('triarb.executor.route_legs_from_results', return_value=[]), \
                patch('triarb.executor.build_flashloan_tx', new_callable=AsyncMock,
                      side_effect=ExecutionError("no flashloan provider")):
            with pytest.raises(ExecutionError, match="flashloan provider"):
                await executor.execute([], sol_mint, 10 ** 9)

        solana.broadcast.assert_not_awaited()
