"""
Shared constants for the net-flow indexer.

Event signatures, numeric constants, and default values used across all modules.
"""

from decimal import Context

from web3 import Web3

# ---------------------------------------------------------------------------
# ERC-20 Transfer event
# ---------------------------------------------------------------------------

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TOPIC_BYTES = 32
ADDRESS_BYTES = 20
MIN_TRANSFER_TOPICS = 3

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

DEFAULT_TOKEN_DECIMALS = 18
# 78 digits covers a full uint256 (2**256 ~ 1.16e77) without rounding
DECIMAL_CONTEXT = Context(prec=78)

# ---------------------------------------------------------------------------
# Indexer Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIRMATIONS = 2
DEFAULT_BACKFILL_WINDOW_BLOCKS = 5000
DEFAULT_LOOKBACK_WINDOW_BLOCKS = 100
DEFAULT_TOKEN_PAUSE_SECONDS = 0.2
DEFAULT_BASE_RETRY_DELAY_SECONDS = 10
DEFAULT_MAX_RETRY_DELAY_SECONDS = 120

# ---------------------------------------------------------------------------
# RPC Defaults
# ---------------------------------------------------------------------------

DEFAULT_BLOCK_NUMBER_TIMEOUT_SECONDS = 10
DEFAULT_GET_LOGS_TIMEOUT_SECONDS = 15
DEFAULT_BLOCK_NUMBER_ATTEMPTS = 3
DEFAULT_BLOCK_NUMBER_RETRY_DELAY_SECONDS = 2

# ---------------------------------------------------------------------------
# Read API Defaults
# ---------------------------------------------------------------------------

DEFAULT_TRANSFER_LIMIT = 10
MAX_TRANSFER_LIMIT = 1000


def compute_transfer_topic() -> str:
    """Recompute the Transfer topic hash from its signature."""
    return "0x" + Web3.keccak(text=TRANSFER_EVENT_SIGNATURE).hex().removeprefix("0x")
