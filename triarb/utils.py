"""
Utility functions for the triangular arbitrage engine.
"""
import sys
from typing import Dict, Optional


def get_terminal_colors() -> Dict[str, str]:
    """
    Get ANSI color codes for terminal output.

    Returns empty strings if output is not a TTY (e.g., redirected to file),
    so log files stay free of escape codes.

    Returns:
        Dictionary with color codes: GREEN, CYAN, YELLOW, RED, DIM, RESET
    """
    use_color = sys.stdout.isatty()
    return {
        'GREEN': '\033[92m' if use_color else '',   # Amounts, counters, config values
        'CYAN': '\033[96m' if use_color else '',    # Pools, mints, routes
        'YELLOW': '\033[93m' if use_color else '',  # Prices, impact, profit
        'RED': '\033[91m' if use_color else '',     # Failures and rejected routes
        'DIM': '\033[90m' if use_color else '',     # Service messages
        'RESET': '\033[0m' if use_color else ''
    }


def short_addr(address: Optional[str], size: int = 4) -> str:
    """Shorten a base58 address for log output: 'So11...1112'."""
    if not address:
        return "?"
    if len(address) <= size * 2 + 3:
        return address
    return f"{address[:size]}...{address[-size:]}"

