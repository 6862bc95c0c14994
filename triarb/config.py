"""
Configuration: .env (secrets, endpoints, numeric knobs) plus config.json (triangles).
"""
import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import base58
import dotenv
from solders.keypair import Keypair

from .exceptions import InputValidationError
from .solana_client import BroadcastOptions

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_RPC_URL = 'https://api.mainnet-beta.solana.com'


def load_config(base_dir: Optional[Path] = None) -> dict:
    """Load configuration from .env and config.json."""
    base_dir = Path(base_dir) if base_dir else PROJECT_ROOT

    env_path = base_dir / '.env'
    if env_path.exists():
        dotenv.load_dotenv(env_path)
    else:
        logger.warning(f".env file not found at {env_path}")

    config_path = base_dir / 'config.json'
    if config_path.exists():
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        logger.warning(f"config.json not found at {config_path}")
        config = {}

    return config


def load_wallet(private_key_str: Optional[str] = None) -> Optional[Keypair]:
    """Load wallet from a base58 private key (defaults to WALLET_PRIVATE_KEY)."""
    if not private_key_str:
        private_key_str = os.getenv('WALLET_PRIVATE_KEY')

    if not private_key_str:
        logger.warning("No wallet private key provided")
        return None

    try:
        key_bytes = base58.b58decode(private_key_str)
        return Keypair.from_bytes(key_bytes)
    except Exception as e:
        logger.error(f"Error loading wallet: {e}")
        return None


def _raw(name: str, section: Dict[str, Any], key: str) -> Any:
    """Env takes precedence, then config.json."""
    value = os.getenv(name)
    if value is not None and value.strip():
        return value.strip()
    return section.get(key)


def _as_int(name: str, value: Any, default: Optional[int], minimum: Optional[int] = None) -> Optional[int]:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise InputValidationError(f"{name} must be an integer, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InputValidationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and value != parsed:
        raise InputValidationError(f"{name} must be an integer, got {value!r}")
    if minimum is not None and parsed < minimum:
        raise InputValidationError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _as_decimal(name: str, value: Any, default: Decimal) -> Decimal:
    if value is None or value == '':
        return default
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise InputValidationError(f"{name} must be a number, got {value!r}")
    if not parsed.is_finite() or parsed < 0:
        raise InputValidationError(f"{name} must be a non-negative number, got {value!r}")
    return parsed


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'yes', 'on')


@dataclass
class TriangleConfig:
    """Three pool addresses in leg order, with optional explicit token order."""
    pools: List[str]
    tokens: Optional[List[str]] = None
    dx_atomic: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "TriangleConfig":
        if isinstance(data, list):
            data = {'pools': data}
        if not isinstance(data, dict):
            raise InputValidationError(f"triangle entry must be a list or object, got {data!r}")
        pools = data.get('pools') or []
        if len(pools) != 3 or not all(isinstance(p, str) and p for p in pools):
            raise InputValidationError(f"triangle needs exactly 3 pool addresses, got {pools!r}")
        tokens = data.get('tokens')
        if tokens is not None and (len(tokens) != 3 or not all(isinstance(t, str) and t for t in tokens)):
            raise InputValidationError(f"triangle tokens must be 3 mints, got {tokens!r}")
        dx_atomic = _as_int('triangle dx_atomic', data.get('dx_atomic'), None, minimum=1)
        return cls(pools=list(pools), tokens=list(tokens) if tokens else None, dx_atomic=dx_atomic)


@dataclass
class EngineConfig:
    rpc_url: str = DEFAULT_RPC_URL
    fallback_rpc_url: Optional[str] = None
    # None lets JupiterClient pick the endpoint from the API key
    jupiter_api_url: Optional[str] = None
    jupiter_api_key: Optional[str] = None
    slippage_bps: int = 50
    max_impact_pct: Decimal = Decimal(5)
    dx_atomic: int = 1_000_000_000
    quote_timeout: float = 10.0
    allow_math_fallback: bool = False
    hydration_batch_size: int = 100
    rpc_min_interval_ms: float = 50.0
    force_refresh: bool = False
    broadcast: BroadcastOptions = field(default_factory=BroadcastOptions)
    compute_unit_limit: Optional[int] = None
    compute_unit_price_micro_lamports: Optional[int] = None
    pools_file: str = 'pools.json'
    triangles: List[TriangleConfig] = field(default_factory=list)

    @classmethod
    def from_sources(cls, config: Optional[dict] = None) -> "EngineConfig":
        """
        Build from the environment and a config.json dict.

        Raises:
            InputValidationError: malformed numeric value or triangle entry
        """
        config = config or {}
        engine = config.get('engine', {})
        execution = config.get('execution', {})

        slippage_bps = _as_int('SLIPPAGE_BPS', _raw('SLIPPAGE_BPS', engine, 'slippage_bps'), 50, minimum=0)
        if slippage_bps > 10_000:
            raise InputValidationError(f"SLIPPAGE_BPS must be <= 10000, got {slippage_bps}")

        quote_timeout = _as_decimal('QUOTE_TIMEOUT', _raw('QUOTE_TIMEOUT', engine, 'quote_timeout'), Decimal('10'))
        if quote_timeout == 0:
            raise InputValidationError("QUOTE_TIMEOUT must be positive")

        broadcast = BroadcastOptions(
            skip_preflight=_as_bool(_raw('SKIP_PREFLIGHT', execution, 'skip_preflight'), True),
            max_retries=_as_int('BROADCAST_MAX_RETRIES', _raw('BROADCAST_MAX_RETRIES', execution, 'max_retries'), 0, minimum=0),
            skip_confirm=_as_bool(_raw('SKIP_CONFIRM', execution, 'skip_confirm'), False),
            commitment=_raw('COMMITMENT', execution, 'commitment') or 'confirmed'
        )

        triangles = [TriangleConfig.from_dict(t) for t in config.get('triangles', [])]

        return cls(
            rpc_url=os.getenv('RPC_URL', DEFAULT_RPC_URL),
            fallback_rpc_url=os.getenv('RPC_URL_FALLBACK') or None,
            jupiter_api_url=os.getenv('JUPITER_API_URL') or None,
            jupiter_api_key=os.getenv('JUPITER_API_KEY') or None,
            slippage_bps=slippage_bps,
            max_impact_pct=_as_decimal('MAX_IMPACT_PCT', _raw('MAX_IMPACT_PCT', engine, 'max_impact_pct'), Decimal(5)),
            dx_atomic=_as_int('DX_ATOMIC', _raw('DX_ATOMIC', engine, 'dx_atomic'), 1_000_000_000, minimum=1),
            quote_timeout=float(quote_timeout),
            allow_math_fallback=_as_bool(_raw('ALLOW_MATH_FALLBACK', engine, 'allow_math_fallback'), False),
            hydration_batch_size=_as_int(
                'HYDRATION_BATCH_SIZE', _raw('HYDRATION_BATCH_SIZE', engine, 'hydration_batch_size'), 100, minimum=1
            ),
            rpc_min_interval_ms=float(
                _as_decimal('RPC_MIN_INTERVAL_MS', _raw('RPC_MIN_INTERVAL_MS', engine, 'rpc_min_interval_ms'), Decimal(50))
            ),
            force_refresh=_as_bool(_raw('FORCE_REFRESH', engine, 'force_refresh'), False),
            broadcast=broadcast,
            compute_unit_limit=_as_int(
                'COMPUTE_UNIT_LIMIT', _raw('COMPUTE_UNIT_LIMIT', execution, 'compute_unit_limit'), None, minimum=1
            ),
            compute_unit_price_micro_lamports=_as_int(
                'PRIORITY_FEE_MICRO_LAMPORTS',
                _raw('PRIORITY_FEE_MICRO_LAMPORTS', execution, 'compute_unit_price_micro_lamports'),
                None,
                minimum=0
            ),
            pools_file=_raw('POOLS_FILE', config, 'pools_file') or 'pools.json',
            triangles=triangles
        )
