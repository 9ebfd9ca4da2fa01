"""
FastAPI read service for net flows and recent transfers.

Read-only: every route goes through the store's ``query_*`` methods, which
read the last committed snapshot, so a request never observes a partially
applied batch.  Amounts are returned as decimal strings.

Usage:
    app = create_app(store, indexer)
    uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=8080))
"""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from api.models import HealthResponse, NetFlowResponse, TransferResponse
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_TRANSFER_LIMIT, MAX_TRANSFER_LIMIT
from shared.serialization_utils import decimal_to_str
from shared.types import NetFlow, Transfer

if TYPE_CHECKING:
    from core.indexer import TransferIndexer
    from storage.transfer_store import TransferStore

SERVICE_BANNER = "Polygon net-flow indexer is running"


def _netflow_response(netflow: NetFlow) -> NetFlowResponse:
    return NetFlowResponse(
        token_address=netflow.token_address,
        cumulative_net=decimal_to_str(netflow.cumulative_net),
        last_block=netflow.last_block,
        updated_at=netflow.updated_at,
    )


def _transfer_response(transfer: Transfer) -> TransferResponse:
    return TransferResponse(
        tx_hash=transfer.tx_hash,
        block_number=transfer.block_number,
        log_index=transfer.log_index,
        from_address=transfer.from_address,
        to_address=transfer.to_address,
        token_address=transfer.token_address,
        amount=decimal_to_str(transfer.amount),
        direction=transfer.direction.value,
        timestamp=transfer.timestamp,
    )


def create_app(store: TransferStore, indexer: Optional[TransferIndexer] = None) -> FastAPI:
    """Build the read API bound to a store (and optionally the running indexer)."""
    logger = setup_module_logger("read_api", "read_api.log", module_folder="API_Logs")

    app = FastAPI(
        title="Net-Flow Indexer API",
        description="Cumulative exchange net flows and recent classified transfers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        """Service banner."""
        return {"service": SERVICE_BANNER, "docs": "/docs"}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Indexer progress snapshot."""
        if indexer is None:
            return HealthResponse(status="starting")

        status = indexer.status
        return HealthResponse(
            status="running",
            phase=status.phase.value,
            latest_block=status.last_latest_block,
            target_block=status.last_target_block,
            retry_delay_seconds=status.retry_delay_seconds,
            cycles_completed=status.cycles_completed,
            last_cycle_at=status.last_cycle_at,
            failed_tokens=status.failed_tokens,
            tokens=[t.address for t in indexer.tokens],
        )

    @app.get("/netflow", response_model=NetFlowResponse)
    async def get_netflow(token: str = Query(..., min_length=1, description="Token address")):
        """Cumulative net flow for a token; zero for tokens never seen."""
        try:
            netflow = await store.query_netflow(token)
        except sqlite3.Error as e:
            logger.error("Netflow query failed for %s: %s", token, e, extra={"token": token})
            raise HTTPException(status_code=500, detail="Storage error")
        return _netflow_response(netflow)

    @app.get("/transfers", response_model=List[TransferResponse])
    async def get_transfers(
        token: str = Query(..., min_length=1, description="Token address"),
        limit: int = Query(DEFAULT_TRANSFER_LIMIT, ge=1, le=MAX_TRANSFER_LIMIT),
    ):
        """Most recent transfers for a token, highest block first."""
        try:
            transfers = await store.query_recent_transfers(token, limit)
        except sqlite3.Error as e:
            logger.error("Transfers query failed for %s: %s", token, e, extra={"token": token})
            raise HTTPException(status_code=500, detail="Storage error")
        return [_transfer_response(t) for t in transfers]

    return app
