"""
Solana RPC client: account reads, blockhash, ALT loading and transaction broadcast.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .exceptions import ExecutionError
from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


@dataclass
class BroadcastOptions:
    """
    Submission policy.

    Defaults favour speed: no preflight, no RPC-side retries. Skipping
    confirmation is an explicit choice that leaves finality unknown.
    """
    skip_preflight: bool = True
    max_retries: int = 0
    skip_confirm: bool = False
    commitment: str = "confirmed"
    confirm_poll_seconds: float = 0.5


def account_data_to_bytes(raw: Any) -> bytes:
    """
    Normalize account data to bytes.

    solana-py may hand back bytes, a base64 string, or ["<base64>", "base64"].
    """
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        return base64.b64decode(raw)
    if isinstance(raw, (list, tuple)) and raw and isinstance(raw[0], str):
        return base64.b64decode(raw[0])
    raise TypeError(f"Unexpected account data type: {type(raw)} (expected bytes, str, or list)")


class SolanaClient:
    """Client for Solana RPC operations with failover support."""

    def __init__(self, rpc_url: str, wallet_keypair: Optional[Keypair] = None, fallback_rpc_url: Optional[str] = None):
        self.rpc_url_primary = rpc_url
        self.rpc_url_fallback = fallback_rpc_url
        self._active_rpc_url = rpc_url
        self._failover_used = False  # Track if failover has been used (for logging)
        self.client = AsyncClient(rpc_url)
        self.wallet = wallet_keypair

    async def _switch_to_fallback(self, reason: str) -> bool:
        """
        Switch to fallback RPC if available.

        Returns:
            True if switched to fallback, False if no fallback available
        """
        if self.rpc_url_fallback and self._active_rpc_url == self.rpc_url_primary:
            if not self._failover_used:
                # Log domains only, RPC URLs often embed API keys
                primary_domain = self.rpc_url_primary.split('//')[1].split('/')[0] if '//' in self.rpc_url_primary else self.rpc_url_primary
                fallback_domain = self.rpc_url_fallback.split('//')[1].split('/')[0] if '//' in self.rpc_url_fallback else self.rpc_url_fallback
                logger.warning(
                    f"RPC failover: PRIMARY ({primary_domain}) -> FALLBACK ({fallback_domain}), reason: {reason}"
                )
                self._failover_used = True

            try:
                await self.client.close()
            except Exception as e:
                logger.debug(f"Error closing primary RPC client: {e}")

            self._active_rpc_url = self.rpc_url_fallback
            self.client = AsyncClient(self.rpc_url_fallback)
            return True
        return False

    def _is_failover_error(self, error: Exception) -> bool:
        """Rate limits, timeouts and connection problems trigger failover."""
        error_str = str(error).lower()
        error_type = type(error).__name__

        if '429' in error_str or 'rate limit' in error_str or 'too many requests' in error_str:
            return True
        if 'timeout' in error_str or 'timed out' in error_str:
            return True
        if error_type in ('ConnectError', 'ConnectTimeout', 'NetworkError', 'TimeoutError', 'ReadTimeout'):
            return True
        if 'unexpected end of file' in error_str:
            return True
        if 'connection' in error_str or 'network' in error_str:
            return True
        return False

    async def _with_failover(self, coro_func, *args, **kwargs):
        """
        Execute coroutine with failover support.

        Raises:
            Exception: If both primary and fallback fail
        """
        try:
            return await coro_func(*args, **kwargs)
        except Exception as e:
            if self._is_failover_error(e) and await self._switch_to_fallback(str(e)):
                try:
                    return await coro_func(*args, **kwargs)
                except Exception as e2:
                    logger.error(f"Both primary and fallback RPC failed. Last error: {e2}")
                    raise e2 from e
            raise

    async def get_multiple_account_data(self, addresses: Sequence[str]) -> List[Optional[bytes]]:
        """
        Read several accounts in one getMultipleAccounts call.

        Errors (rate limits included) propagate so the caller can back off.
        No failover here: the hydrator's limiter owns retry pacing.

        Returns:
            Raw account data per address, None for accounts that do not exist
        """
        if not addresses:
            return []
        pubkeys = [Pubkey.from_string(a) for a in addresses]
        resp = await self.client.get_multiple_accounts(pubkeys, commitment=Confirmed, encoding="base64")
        results: List[Optional[bytes]] = []
        for account in resp.value:
            results.append(account_data_to_bytes(account.data) if account is not None else None)
        return results

    async def get_latest_blockhash(self) -> Optional[Tuple[Hash, int]]:
        """
        Get the latest blockhash and the last block height it stays valid for.

        Returns:
            (blockhash, last_valid_block_height), or None if failed
        """
        async def _get():
            return await self.client.get_latest_blockhash(commitment=Confirmed)

        try:
            result = await self._with_failover(_get)
            if result.value:
                return result.value.blockhash, result.value.last_valid_block_height
            return None
        except Exception as e:
            logger.error(f"Error getting latest blockhash: {e}")
            return None

    async def get_address_lookup_table_accounts(self, addresses: List[str]) -> List[AddressLookupTableAccount]:
        """
        Load Address Lookup Table accounts, with failover.

        Raises:
            ValueError: If any ALT account cannot be loaded
        """
        if not addresses:
            return []

        async def _load_alt_accounts():
            alt_accounts = []
            for alt_address in addresses:
                pubkey = Pubkey.from_string(alt_address)
                account_info = await self.client.get_account_info(pubkey, commitment=Confirmed, encoding="base64")
                if account_info.value is None:
                    raise ValueError(f"ALT account {alt_address} not found")
                try:
                    table = AddressLookupTable.deserialize(account_data_to_bytes(account_info.value.data))
                except Exception as e:
                    raise ValueError(f"Cannot load ALT account {alt_address}: {e}") from e
                alt_accounts.append(AddressLookupTableAccount(pubkey, table.addresses))
                logger.debug(f"Loaded ALT account: {alt_address} with {len(table.addresses)} addresses")
            return alt_accounts

        return await self._with_failover(_load_alt_accounts)

    async def confirm_transaction(
        self,
        signature,
        commitment: str = "confirmed",
        last_valid_block_height: Optional[int] = None,
        sleep_seconds: float = 0.5
    ):
        """
        Wait for confirmation within the blockhash validity window.

        Raises:
            ExecutionError: expired, failed on-chain, or never confirmed
        """
        try:
            resp = await self.client.confirm_transaction(
                signature,
                commitment=commitment,
                sleep_seconds=sleep_seconds,
                last_valid_block_height=last_valid_block_height
            )
        except Exception as e:
            raise ExecutionError(f"confirmation failed for {signature}: {e}") from e

        status = resp.value[0] if resp.value else None
        if status is None:
            raise ExecutionError(f"transaction {signature} not found after confirmation wait")
        if status.err is not None:
            raise ExecutionError(f"transaction {signature} failed on-chain: {status.err}")
        logger.debug(f"Transaction {signature} confirmed ({status.confirmation_status})")

    async def broadcast(
        self,
        transaction: VersionedTransaction,
        signers: Sequence[Keypair],
        options: Optional[BroadcastOptions] = None,
        last_valid_block_height: Optional[int] = None
    ) -> str:
        """
        Sign, send and (unless skip_confirm) confirm a transaction.

        Args:
            transaction: Unsigned (or placeholder-signed) v0 transaction
            signers: Keypairs for every required signature, fee payer first
            options: BroadcastOptions (default: skip preflight, no retries, confirm)
            last_valid_block_height: Validity window of the transaction's blockhash

        Returns:
            Transaction signature (base58)

        Raises:
            ExecutionError: signing, sending or confirmation failed
        """
        options = options or BroadcastOptions()
        if not signers:
            raise ExecutionError("no signers provided")

        try:
            signed = VersionedTransaction(transaction.message, list(signers))
        except Exception as e:
            raise ExecutionError(f"signing failed: {e}") from e

        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=options.skip_preflight,
            preflight_commitment=options.commitment,
            max_retries=options.max_retries
        )
        try:
            result = await self.client.send_transaction(signed, opts=opts)
        except Exception as e:
            raise ExecutionError(f"send failed: {e}") from e

        signature = result.value
        if signature is None:
            raise ExecutionError("send returned no signature")
        sig_str = str(signature)
        logger.info(f"Transaction sent: {colors['CYAN']}{sig_str}{colors['RESET']}")

        if options.skip_confirm:
            logger.warning(f"Confirmation skipped for {sig_str}: finality unknown")
            return sig_str

        await self.confirm_transaction(
            signature,
            commitment=options.commitment,
            last_valid_block_height=last_valid_block_height,
            sleep_seconds=options.confirm_poll_seconds
        )
        logger.info(f"{colors['GREEN']}Transaction confirmed:{colors['RESET']} {sig_str}")
        return sig_str

    async def close(self):
        """Close RPC client."""
        await self.client.close()
