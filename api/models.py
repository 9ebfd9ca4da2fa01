"""
Pydantic models for read API responses.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class NetFlowResponse(BaseModel):
    """Cumulative net flow for one token."""

    token_address: str = Field(..., description="Token contract address")
    cumulative_net: str = Field(..., description="Inflow minus outflow, decimal string")
    last_block: int = Field(..., ge=0, description="Highest block folded into the aggregate")
    updated_at: str = Field(..., description="Last recompute time (ISO-8601 UTC)")


class TransferResponse(BaseModel):
    """One classified transfer."""

    tx_hash: str
    block_number: int = Field(..., ge=0)
    log_index: int = Field(..., ge=0)
    from_address: str
    to_address: str
    token_address: str
    amount: str = Field(..., description="Scaled token amount, decimal string")
    direction: str = Field(..., description="IN or OUT relative to watched addresses")
    timestamp: str = Field(..., description="Recorded-at time (ISO-8601 UTC)")


class HealthResponse(BaseModel):
    """Indexer status snapshot."""

    status: str = Field(..., description="Service status: running or starting")
    phase: Optional[str] = Field(None, description="backfilling or polling")
    latest_block: Optional[int] = Field(None, description="Last observed chain head")
    target_block: Optional[int] = Field(None, description="Last confirmed scan target")
    retry_delay_seconds: Optional[float] = Field(None, description="Current inter-cycle delay")
    cycles_completed: int = Field(0, ge=0)
    last_cycle_at: Optional[datetime] = None
    failed_tokens: List[str] = Field(default_factory=list)
    tokens: List[str] = Field(default_factory=list, description="Tracked token addresses")
