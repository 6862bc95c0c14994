"""
Route executor: plans the flashloan transaction for simulated legs and broadcasts it.
"""
import logging
from typing import Optional, Sequence

from solders.keypair import Keypair

from .exceptions import ExecutionError
from .flashloan import ComputeBudget, FlashloanInstructionBuilder, build_flashloan_tx, route_legs_from_results
from .leg_simulator import LegResult
from .liquidity_sdk import LiquiditySdk
from .solana_client import BroadcastOptions, SolanaClient

logger = logging.getLogger(__name__)


class RouteExecutor:
    """Everything execution needs, passed in explicitly (payer included)."""

    def __init__(
        self,
        solana_client: SolanaClient,
        payer: Keypair,
        sdk: Optional[LiquiditySdk],
        flashloan_builder: Optional[FlashloanInstructionBuilder],
        broadcast_options: Optional[BroadcastOptions] = None,
        compute_budget: Optional[ComputeBudget] = None
    ):
        if payer is None:
            raise ExecutionError("RouteExecutor requires a payer keypair")
        self.solana = solana_client
        self.payer = payer
        self.sdk = sdk
        self.flashloan_builder = flashloan_builder
        self.broadcast_options = broadcast_options or BroadcastOptions()
        self.compute_budget = compute_budget

    async def execute(self, legs: Sequence[LegResult], loan_mint: str, loan_amount_atomic: int) -> str:
        """
        Build and broadcast the flashloan for three simulated legs.

        Returns:
            Transaction signature

        Raises:
            ExecutionError: planning, signing, sending or confirmation failed
        """
        route_legs = route_legs_from_results(legs)
        planned = await build_flashloan_tx(
            self.solana,
            self.payer,
            loan_mint,
            loan_amount_atomic,
            route_legs,
            self.flashloan_builder,
            self.sdk,
            compute_budget=self.compute_budget
        )
        return await self.solana.broadcast(
            planned.transaction,
            planned.signers,
            options=self.broadcast_options,
            last_valid_block_height=planned.last_valid_block_height
        )
