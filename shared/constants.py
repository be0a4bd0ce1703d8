"""
Shared constants for the market filters client.

Fixed-point scale, reserved filter labels, and filter defaults used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

FIXED_POINT_ONE = Decimal("1_000_000_000_000_000_000")  # 1e18 (on-chain fixed-point base)
DECIMAL_PRECISION = 128  # int256 / 1e18 stays exact
WORD_SIZE_BYTES = 32

# ---------------------------------------------------------------------------
# Reserved Filter Labels
# ---------------------------------------------------------------------------

BLOCK_LABEL = "block"
CONTRACTS_LABEL = "contracts"
RESERVED_LABELS = (BLOCK_LABEL, CONTRACTS_LABEL)

# ---------------------------------------------------------------------------
# Trade Types
# ---------------------------------------------------------------------------

TRADE_TYPE_BUY = 1
TRADE_TYPE_SELL = 2
TRADE_TYPES = {TRADE_TYPE_BUY: "buy", TRADE_TYPE_SELL: "sell"}

# Fill events whose type / isShortSell are filled in from context
FILL_LABELS = ("log_fill_tx", "log_short_fill_tx")
SHORT_FILL_LABEL = "log_short_fill_tx"

# ---------------------------------------------------------------------------
# Filter Defaults
# ---------------------------------------------------------------------------

DEFAULT_PULSE_SECONDS = 0.5  # poll-mode heartbeat interval
DEFAULT_MAX_POLL_FAILURES = 5
CONTRACTS_FROM_BLOCK = "0x01"
CONTRACTS_TO_BLOCK = "latest"
EMPTY_FILTER_ID = "0x"
