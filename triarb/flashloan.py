"""
Flashloan execution planner.

Builds one atomic v0 transaction: compute budget, then the provider's
borrow ... repay instructions wrapping the three swap legs. Every failure
raises ExecutionError; a partial transaction is never returned.
"""
import base64
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .exceptions import ExecutionError
from .leg_simulator import LegResult
from .liquidity_sdk import LegInstructions, LiquiditySdk
from .pools import Variant
from .utils import get_terminal_colors, short_addr

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

MAX_TRANSACTION_SIZE = 1232


class DexType(str, Enum):
    """Instruction-builder key for a leg."""
    METEORA_DLMM = "METEORA_DLMM"
    ORCA_WHIRLPOOL = "ORCA_WHIRLPOOL"
    RAYDIUM_CLMM = "RAYDIUM_CLMM"
    RAYDIUM_CPMM = "RAYDIUM_CPMM"
    UNKNOWN = "UNKNOWN"


def resolve_dex_type(variant: Optional[Variant], via: Optional[str] = None, dex: Optional[str] = None) -> DexType:
    """Map a leg's variant / 'via' tag / DEX name to the builder key."""
    variant_value = variant.value if isinstance(variant, Variant) else (variant or "")
    via = via or ""
    if variant_value == "dlmm" or "dlmm" in via:
        return DexType.METEORA_DLMM
    if variant_value == "whirlpool" or "whirlpool" in via:
        return DexType.ORCA_WHIRLPOOL
    if variant_value == "clmm" or "clmm" in via:
        return DexType.RAYDIUM_CLMM
    if variant_value == "cpmm" or "cpmm" in via or "amm" in via:
        if dex not in (None, "", "raydium", "unknown"):
            logger.debug(f"cpmm leg on {dex} routed through the Raydium CP builder")
        return DexType.RAYDIUM_CPMM
    return DexType.UNKNOWN


@dataclass
class RouteLeg:
    """One leg as handed to the planner; amounts are the leg's own quoted amounts."""
    input_mint: str
    output_mint: str
    amount_in_atomic: int
    min_out_atomic: int
    pool_address: str
    dex_type: DexType
    variant: Optional[Variant] = None
    quoted_out_atomic: Optional[int] = None
    routing_accounts: List[str] = field(default_factory=list)
    sdk_payload: Any = None

    def __post_init__(self):
        for name in ("amount_in_atomic", "min_out_atomic"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ExecutionError(f"RouteLeg.{name} must be an int, got {value!r}")
        if self.amount_in_atomic <= 0:
            raise ExecutionError(f"RouteLeg.amount_in_atomic must be positive, got {self.amount_in_atomic}")
        if self.min_out_atomic < 0:
            raise ExecutionError(f"RouteLeg.min_out_atomic must be non-negative, got {self.min_out_atomic}")
        if not self.pool_address:
            raise ExecutionError("RouteLeg.pool_address required")


def route_legs_from_results(legs: Sequence[LegResult]) -> List[RouteLeg]:
    """Turn successful simulated legs into planner legs, carrying each leg's own quote."""
    route_legs = []
    for index, leg in enumerate(legs, 1):
        if not leg.ok or leg.quote is None:
            raise ExecutionError(f"leg {index} has no quote ({leg.reason})")
        quote = leg.quote
        route_legs.append(RouteLeg(
            input_mint=leg.input_mint,
            output_mint=leg.output_mint,
            amount_in_atomic=quote.in_atomic,
            min_out_atomic=quote.min_out_atomic,
            pool_address=leg.pool.address,
            dex_type=resolve_dex_type(leg.pool.variant, leg.via, leg.pool.dex),
            variant=leg.pool.variant,
            quoted_out_atomic=quote.out_atomic,
            routing_accounts=list(quote.routing_accounts),
            sdk_payload=quote.sdk_payload
        ))
    return route_legs


@dataclass
class SwapBuilder:
    """Per-DEX leg instruction builder."""
    build: Callable[[RouteLeg, Pubkey, LiquiditySdk], Awaitable[LegInstructions]]
    requires_routing_accounts: bool


async def _build_via_sdk(leg: RouteLeg, payer: Pubkey, sdk: LiquiditySdk) -> LegInstructions:
    return await sdk.build_swap_instructions(leg, payer)


# Bin/tick based programs need the bin or tick arrays captured at quote time
SWAP_INSTRUCTION_BUILDERS: Dict[DexType, SwapBuilder] = {
    DexType.METEORA_DLMM: SwapBuilder(_build_via_sdk, requires_routing_accounts=True),
    DexType.ORCA_WHIRLPOOL: SwapBuilder(_build_via_sdk, requires_routing_accounts=True),
    DexType.RAYDIUM_CLMM: SwapBuilder(_build_via_sdk, requires_routing_accounts=True),
    DexType.RAYDIUM_CPMM: SwapBuilder(_build_via_sdk, requires_routing_accounts=False),
}


@dataclass
class FlashloanInstructions:
    """What a flashloan provider returns: borrow ... callback ... repay, plus any extra signers."""
    instructions: List[Instruction]
    signers: List[Keypair] = field(default_factory=list)


class FlashloanInstructionBuilder(Protocol):
    async def __call__(
        self,
        payer: Pubkey,
        loan_mint: Pubkey,
        loan_amount_atomic: int,
        callback_instructions: List[Instruction]
    ) -> FlashloanInstructions:
        ...


@dataclass
class ComputeBudget:
    unit_limit: Optional[int] = None
    unit_price_micro_lamports: Optional[int] = None


def compute_budget_instructions(budget: Optional[ComputeBudget]) -> List[Instruction]:
    if budget is None:
        return []
    instructions = []
    if budget.unit_limit is not None:
        instructions.append(set_compute_unit_limit(budget.unit_limit))
    if budget.unit_price_micro_lamports is not None:
        instructions.append(set_compute_unit_price(budget.unit_price_micro_lamports))
    return instructions


@dataclass
class PlannedTransaction:
    """Unsigned transaction plus the signer set the broadcaster must use."""
    transaction: VersionedTransaction
    signers: List[Keypair]
    last_valid_block_height: Optional[int]
    size_bytes: int = 0


def instruction_signature(instruction: Instruction) -> str:
    """Hash of program id, account metas and data, used to spot duplicates."""
    sig_parts = [str(instruction.program_id)]
    for account in instruction.accounts:
        sig_parts.append(f"{account.pubkey}:{account.is_signer}:{account.is_writable}")
    sig_parts.append(base64.b64encode(bytes(instruction.data)).decode('utf-8'))
    return hashlib.sha256("|".join(sig_parts).encode()).hexdigest()


def deduplicate_instructions(instructions: List[Instruction]) -> List[Instruction]:
    """Drop repeated instructions, keeping the first occurrence in order."""
    seen = set()
    deduplicated = []
    for instr in instructions:
        sig = instruction_signature(instr)
        if sig not in seen:
            seen.add(sig)
            deduplicated.append(instr)
    return deduplicated


def validate_route_legs(loan_mint: str, loan_amount_atomic: int, route_legs: Sequence[RouteLeg]):
    """
    Check the legs form the loan cycle with per-leg amounts.

    Raises:
        ExecutionError: on any inconsistency
    """
    if len(route_legs) != 3:
        raise ExecutionError(f"flashloan route needs exactly 3 legs, got {len(route_legs)}")
    if not isinstance(loan_amount_atomic, int) or isinstance(loan_amount_atomic, bool) or loan_amount_atomic <= 0:
        raise ExecutionError(f"loan amount must be a positive int, got {loan_amount_atomic!r}")
    if route_legs[0].input_mint != loan_mint or route_legs[-1].output_mint != loan_mint:
        raise ExecutionError("route must start and end in the loan mint")
    if route_legs[0].amount_in_atomic != loan_amount_atomic:
        raise ExecutionError(
            f"leg 1 input {route_legs[0].amount_in_atomic} does not match loan amount {loan_amount_atomic}"
        )

    for index in range(1, len(route_legs)):
        prev, leg = route_legs[index - 1], route_legs[index]
        if leg.input_mint != prev.output_mint:
            raise ExecutionError(f"leg {index + 1} input mint does not continue leg {index}")
        if prev.quoted_out_atomic is not None:
            if leg.amount_in_atomic != prev.quoted_out_atomic:
                raise ExecutionError(
                    f"leg {index + 1} input {leg.amount_in_atomic} is not leg {index} "
                    f"quoted output {prev.quoted_out_atomic}"
                )
        elif leg.amount_in_atomic == loan_amount_atomic:
            raise ExecutionError(f"leg {index + 1} reuses the loan amount instead of its own quoted amount")


async def build_flashloan_tx(
    solana_client,
    payer: Keypair,
    loan_mint: str,
    loan_amount_atomic: int,
    route_legs: Sequence[RouteLeg],
    flashloan_builder: Optional[FlashloanInstructionBuilder],
    sdk: Optional[LiquiditySdk],
    compute_budget: Optional[ComputeBudget] = None
) -> PlannedTransaction:
    """
    Compose the atomic flashloan transaction for a three-leg route.

    Args:
        solana_client: SolanaClient (ALT loading and blockhash)
        payer: Fee payer and swap authority
        loan_mint: Mint borrowed (and repaid)
        loan_amount_atomic: Amount borrowed; must equal leg 1 input
        route_legs: The three legs, in order
        flashloan_builder: Provider wrapping the callback instructions
        sdk: Liquidity SDK the per-leg builders delegate to
        compute_budget: Optional compute unit limit / price

    Returns:
        PlannedTransaction (unsigned)

    Raises:
        ExecutionError: if any step fails
    """
    if flashloan_builder is None:
        raise ExecutionError("flashloan provider is not configured")
    if sdk is None:
        raise ExecutionError("no liquidity SDK available to build swap instructions")
    validate_route_legs(loan_mint, loan_amount_atomic, route_legs)

    payer_pubkey = payer.pubkey()
    all_setup: List[Instruction] = []
    swaps: List[Instruction] = []
    all_cleanup: List[Instruction] = []
    alt_addresses: List[str] = []

    for index, leg in enumerate(route_legs, 1):
        builder = SWAP_INSTRUCTION_BUILDERS.get(leg.dex_type)
        if builder is None:
            raise ExecutionError(f"leg {index}: no instruction builder for dex type {leg.dex_type}")
        if builder.requires_routing_accounts and not leg.routing_accounts:
            raise ExecutionError(
                f"leg {index}: {leg.dex_type.value} swap on {leg.pool_address} needs routing accounts"
            )
        try:
            leg_instructions = await builder.build(leg, payer_pubkey, sdk)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"leg {index}: instruction builder failed: {e}") from e
        if not leg_instructions.swap:
            raise ExecutionError(f"leg {index}: builder returned no swap instruction")

        all_setup.extend(leg_instructions.setup)
        swaps.extend(leg_instructions.swap)
        all_cleanup.extend(leg_instructions.cleanup)
        for address in leg_instructions.address_lookup_tables:
            if address not in alt_addresses:
                alt_addresses.append(address)
        logger.debug(
            f"Leg {index} ({leg.dex_type.value} {short_addr(leg.pool_address)}): "
            f"in={leg.amount_in_atomic} min_out={leg.min_out_atomic} "
            f"{len(leg_instructions.setup)} setup, {len(leg_instructions.swap)} swap, "
            f"{len(leg_instructions.cleanup)} cleanup"
        )

    callback = deduplicate_instructions(all_setup) + swaps + deduplicate_instructions(all_cleanup)

    try:
        flash = await flashloan_builder(
            payer_pubkey,
            Pubkey.from_string(loan_mint),
            loan_amount_atomic,
            callback
        )
    except ExecutionError:
        raise
    except Exception as e:
        raise ExecutionError(f"flashloan provider failed: {e}") from e
    if flash is None or not flash.instructions:
        raise ExecutionError("flashloan provider returned no instructions")

    instructions = compute_budget_instructions(compute_budget) + list(flash.instructions)

    alt_accounts: List[AddressLookupTableAccount] = []
    if alt_addresses:
        try:
            alt_accounts = await solana_client.get_address_lookup_table_accounts(alt_addresses)
        except Exception as e:
            raise ExecutionError(f"failed to load address lookup tables: {e}") from e

    latest = await solana_client.get_latest_blockhash()
    if latest is None:
        raise ExecutionError("failed to fetch a recent blockhash")
    blockhash, last_valid_block_height = latest

    try:
        message = MessageV0.try_compile(
            payer=payer_pubkey,
            instructions=instructions,
            address_lookup_table_accounts=alt_accounts,
            recent_blockhash=blockhash
        )
        num_signers = message.header.num_required_signatures
        transaction = VersionedTransaction.populate(message, [Signature.default()] * num_signers)
        raw_len = len(bytes(transaction))
    except Exception as e:
        raise ExecutionError(f"failed to compile v0 message: {e}") from e

    if raw_len > MAX_TRANSACTION_SIZE:
        raise ExecutionError(
            f"transaction too large: {raw_len} bytes (max {MAX_TRANSACTION_SIZE}), "
            f"{len(instructions)} instructions, {len(alt_accounts)} ALTs"
        )

    signers = [payer] + [s for s in flash.signers if s.pubkey() != payer_pubkey]
    logger.info(
        f"{colors['GREEN']}Flashloan transaction built (v0):{colors['RESET']} "
        f"{len(instructions)} instructions, {len(alt_accounts)} ALTs, "
        f"size={raw_len}/{MAX_TRANSACTION_SIZE} bytes, signers={len(signers)}"
    )
    return PlannedTransaction(
        transaction=transaction,
        signers=signers,
        last_valid_block_height=last_valid_block_height,
        size_bytes=raw_len
    )
