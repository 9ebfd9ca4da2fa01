"""
Shared data types for the net-flow indexer.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    IN = "IN"  # recipient is a watched address
    OUT = "OUT"  # sender is a watched address


class IndexerPhase(Enum):
    BACKFILLING = "backfilling"
    POLLING = "polling"


# ---------------------------------------------------------------------------
# Chain Data Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawLog:
    """One eth_getLogs entry, fields kept in their wire (hex string) form."""

    address: str
    topics: list[str]
    data: str
    block_number: str
    transaction_hash: str
    log_index: str

    @classmethod
    def from_rpc(cls, entry: dict[str, Any]) -> RawLog:
        topics = entry.get("topics") or []
        return cls(
            address=str(entry.get("address") or ""),
            topics=[str(t) for t in topics] if isinstance(topics, list) else [],
            data=str(entry.get("data") or ""),
            block_number=str(entry.get("blockNumber") or ""),
            transaction_hash=str(entry.get("transactionHash") or ""),
            log_index=str(entry.get("logIndex") or ""),
        )


@dataclass(frozen=True)
class DecodedTransfer:
    from_address: str
    to_address: str
    value: int  # raw token units, unscaled
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class TrackedToken:
    address: str  # EIP-55 checksum
    symbol: str
    decimals: int


# ---------------------------------------------------------------------------
# Persisted Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transfer:
    tx_hash: str
    block_number: int
    log_index: int
    token_address: str
    from_address: str
    to_address: str
    amount: Decimal  # scaled by token decimals
    direction: TransferDirection
    timestamp: str  # recorded-at time (ISO-8601 UTC), not chain time


@dataclass(frozen=True)
class NetFlow:
    token_address: str
    cumulative_net: Decimal  # inflow - outflow, may be negative
    last_block: int
    updated_at: str


# ---------------------------------------------------------------------------
# Indexer Status
# ---------------------------------------------------------------------------


@dataclass
class IndexerStatus:
    phase: IndexerPhase = IndexerPhase.BACKFILLING
    last_latest_block: int | None = None
    last_target_block: int | None = None
    retry_delay_seconds: float = 0
    cycles_completed: int = 0
    last_cycle_at: datetime | None = None
    failed_tokens: list[str] = field(default_factory=list)
