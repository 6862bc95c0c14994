"""
Tests for utils.py
"""
from unittest.mock import patch

from triarb.utils import get_terminal_colors, short_addr


class TestGetTerminalColors:
    """Tests for get_terminal_colors function."""

    def test_get_terminal_colors_with_tty(self):
        """Test get_terminal_colors returns color codes when stdout is a TTY."""
        with patch('sys.stdout.isatty', return_value=True):
            colors = get_terminal_colors()
            assert colors['GREEN'] == '\033[92m'
            assert colors['CYAN'] == '\033[96m'
            assert colors['YELLOW'] == '\033[93m'
            assert colors['RED'] == '\033[91m'
            assert colors['DIM'] == '\033[90m'
            assert colors['RESET'] == '\033[0m'

    def test_get_terminal_colors_without_tty(self):
        """Test get_terminal_colors returns empty strings when stdout is not a TTY."""
        with patch('sys.stdout.isatty', return_value=False):
            colors = get_terminal_colors()
            assert set(colors.values()) == {''}


class TestShortAddr:

    def test_long_address(self, sol_mint):
        assert short_addr(sol_mint) == "So11...1112"

    def test_custom_size(self, usdc_mint):
        assert short_addr(usdc_mint, size=6) == "EPjFWd...yTDt1v"

    def test_short_and_missing(self):
        assert short_addr("abc") == "abc"
        assert short_addr(None) == "?"
        assert short_addr("") == "?"

