"""
Jupiter API client for single-pool quotes and swap instructions.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class JupiterQuote:
    """Quote response from Jupiter API."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: Optional[int]
    price_impact_pct: Optional[str]  # Jupiter reports a fraction as a string, e.g. "0.0012"
    route_plan: List[Dict[str, Any]]
    slippage_bps: int = 50
    context_slot: Optional[int] = None
    time_taken: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def amm_keys(self) -> List[str]:
        """AMM (pool) addresses of each hop in the route plan."""
        keys = []
        for hop in self.route_plan:
            swap_info = hop.get("swapInfo", {}) if isinstance(hop, dict) else {}
            keys.append(swap_info.get("ammKey", ""))
        return keys


@dataclass
class SwapAccountMeta:
    """Account metadata for swap instruction."""
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass
class SwapInstruction:
    """Single instruction from Jupiter API (base64 data)."""
    program_id: str
    accounts: List[SwapAccountMeta]
    data: str


@dataclass
class JupiterSwapInstructionsResponse:
    """Swap instructions response from Jupiter API."""
    setup_instructions: List[SwapInstruction]
    swap_instruction: SwapInstruction
    cleanup_instruction: Optional[SwapInstruction]
    address_lookup_tables: List[str]  # ALT addresses


class JupiterClient:
    """Client for the Jupiter swap API (v1 paths)."""

    PUBLIC_ENDPOINT = "https://lite-api.jup.ag"
    AUTH_ENDPOINT = "https://api.jup.ag"

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        max_retries_on_429: int = 3
    ):
        """
        Initialize Jupiter API client.

        Args:
            api_url: Explicit API base URL. If None, picks the public or authenticated host.
            api_key: Jupiter API key, sent in the x-api-key header.
            timeout: Request timeout in seconds.
            rate_limiter: Shared limiter (default: 1 request per second).
            max_retries_on_429: Maximum retries on 429 rate limit error (default: 3)
        """
        if api_url:
            self.api_url = api_url.rstrip('/')
        else:
            self.api_url = self.AUTH_ENDPOINT if api_key else self.PUBLIC_ENDPOINT

        self.api_key = api_key
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter.per_second(1.0)
        self.max_retries_on_429 = max_retries_on_429

        headers = {}
        if api_key:
            headers["x-api-key"] = api_key
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    def _url(self, path: str) -> str:
        base_url = self.api_url
        for suffix in ('/v6', '/v1'):
            if base_url.endswith(suffix):
                base_url = base_url[:-len(suffix)]
        return f"{base_url}{path}"

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        """
        Perform a rate-limited request, retrying on 429.

        Returns:
            Decoded JSON body, or None when the request failed for good
        """
        url = self._url(path)
        for attempt in range(self.max_retries_on_429 + 1):
            await self.rate_limiter.acquire()
            try:
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                self.rate_limiter.on_success()
                return response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429 and attempt < self.max_retries_on_429:
                    delay_ms = self.rate_limiter.on_rate_limited()
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after:
                        try:
                            # Retry-After overrides our own backoff when longer
                            extra = float(retry_after) - delay_ms / 1000.0
                            if extra > 0:
                                await asyncio.sleep(extra)
                        except ValueError:
                            pass
                    logger.warning(
                        f"Rate limit exceeded (429) from {url}, "
                        f"retrying (attempt {attempt + 1}/{self.max_retries_on_429})"
                    )
                    continue
                if status == 429:
                    logger.error(f"Rate limit exceeded (429) from {url} after {self.max_retries_on_429} retries")
                elif status == 404:
                    logger.debug(f"Route not found (404) from {url}")
                else:
                    logger.warning(f"Jupiter request failed: {status} - {e.response.text}")
                return None
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.NetworkError) as e:
                logger.debug(f"Connection error for {url}: {e}")
                return None
            except httpx.TimeoutException as e:
                logger.debug(f"Timeout for {url}: {e}")
                return None
        return None

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 50,
        dexes: Optional[List[str]] = None,
        only_direct_routes: bool = False
    ) -> Optional[JupiterQuote]:
        """
        Get an ExactIn quote.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit
            slippage_bps: Slippage in basis points (1 bps = 0.01%)
            dexes: Restrict routing to these DEX labels (e.g. ["Whirlpool"])
            only_direct_routes: Only return single-hop routes

        Returns:
            JupiterQuote or None if no quote was available
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "swapMode": "ExactIn",
            "onlyDirectRoutes": str(only_direct_routes).lower(),
        }
        if dexes:
            params["dexes"] = ",".join(dexes)

        start_time = time.time()
        data = await self._request("GET", "/swap/v1/quote", params=params)
        if data is None:
            return None

        threshold = data.get("otherAmountThreshold")
        quote = JupiterQuote(
            input_mint=data.get("inputMint", input_mint),
            output_mint=data.get("outputMint", output_mint),
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data.get("outAmount", 0)),
            other_amount_threshold=int(threshold) if threshold is not None else None,
            price_impact_pct=data.get("priceImpactPct"),
            route_plan=data.get("routePlan", []),
            slippage_bps=int(data.get("slippageBps", slippage_bps)),
            context_slot=data.get("contextSlot"),
            time_taken=time.time() - start_time,
            raw=data
        )
        logger.debug(
            f"Quote {input_mint[:8]}... -> {output_mint[:8]}... "
            f"in={quote.in_amount} out={quote.out_amount} hops={len(quote.route_plan)}"
        )
        return quote

    def _parse_accounts(self, accounts_data: Union[List[str], List[Dict[str, Any]]]) -> List[SwapAccountMeta]:
        """
        Parse accounts from Jupiter API response.

        Raises:
            NotImplementedError: If accounts are plain strings (missing meta flags)
        """
        if not accounts_data:
            return []

        if isinstance(accounts_data[0], str):
            raise NotImplementedError(
                "Accounts are in string format (missing isSigner/isWritable flags). "
                "Cannot build Solana Instruction objects."
            )

        parsed_accounts = []
        for account_data in accounts_data:
            if not isinstance(account_data, dict):
                raise ValueError(f"Unexpected account format: {type(account_data)}")
            parsed_accounts.append(SwapAccountMeta(
                pubkey=account_data.get("pubkey", ""),
                is_signer=account_data.get("isSigner", False),
                is_writable=account_data.get("isWritable", False)
            ))
        return parsed_accounts

    def _parse_instruction(self, instr_data: Dict[str, Any]) -> SwapInstruction:
        return SwapInstruction(
            program_id=instr_data.get("programId", ""),
            accounts=self._parse_accounts(instr_data.get("accounts", [])),
            data=instr_data.get("data", "")
        )

    def _build_quote_response(self, quote: JupiterQuote) -> Dict[str, Any]:
        """Echo the quote back in the shape /swap-instructions expects."""
        if quote.raw:
            return quote.raw
        return {
            "inputMint": quote.input_mint,
            "inAmount": str(quote.in_amount),
            "outputMint": quote.output_mint,
            "outAmount": str(quote.out_amount),
            "otherAmountThreshold": str(
                quote.other_amount_threshold if quote.other_amount_threshold is not None else quote.out_amount
            ),
            "swapMode": "ExactIn",
            "slippageBps": quote.slippage_bps,
            "priceImpactPct": quote.price_impact_pct or "0",
            "routePlan": quote.route_plan
        }

    async def get_swap_instructions(
        self,
        quote: JupiterQuote,
        user_public_key: str,
        wrap_unwrap_sol: bool = True,
        use_shared_accounts: bool = False
    ) -> Optional[JupiterSwapInstructionsResponse]:
        """
        Get swap instructions (for composing into a larger transaction).

        Args:
            quote: JupiterQuote object
            user_public_key: User's public key (base58)
            wrap_unwrap_sol: Auto wrap/unwrap SOL
            use_shared_accounts: Let Jupiter use its shared program accounts

        Returns:
            JupiterSwapInstructionsResponse, or None if the request failed
        """
        payload = {
            "quoteResponse": self._build_quote_response(quote),
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_unwrap_sol,
            "useSharedAccounts": use_shared_accounts,
            "dynamicComputeUnitLimit": False
        }

        data = await self._request("POST", "/swap/v1/swap-instructions", json=payload)
        if data is None:
            return None
        if "swapInstruction" not in data:
            logger.error("Jupiter swap-instructions response is missing swapInstruction")
            return None

        setup_instructions = [self._parse_instruction(i) for i in data.get("setupInstructions") or []]
        swap_instruction = self._parse_instruction(data["swapInstruction"])
        cleanup_instruction = None
        if data.get("cleanupInstruction"):
            cleanup_instruction = self._parse_instruction(data["cleanupInstruction"])

        # Address lookup tables (dedupe while preserving order)
        raw_alts = data.get("addressLookupTableAddresses") or data.get("addressLookupTables") or []
        seen = set()
        address_lookup_tables = [
            a for a in raw_alts
            if isinstance(a, str) and not (a in seen or seen.add(a))
        ]

        response = JupiterSwapInstructionsResponse(
            setup_instructions=setup_instructions,
            swap_instruction=swap_instruction,
            cleanup_instruction=cleanup_instruction,
            address_lookup_tables=address_lookup_tables
        )
        logger.debug(
            f"Swap instructions: {len(setup_instructions)} setup, 1 swap, "
            f"{1 if cleanup_instruction else 0} cleanup, {len(address_lookup_tables)} ALTs"
        )
        return response

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
