"""
Transfer indexing loop for the net-flow indexer.

Two phases:
    BACKFILLING  one best-effort scan of the last ``backfill_window_blocks``
                 blocks below the confirmed head at startup.
    POLLING      forever: each cycle rescans the last ``lookback_window_blocks``
                 blocks below the confirmed head, then sleeps.

Per token and block range: fetch logs -> decode -> classify -> one atomic
batch upsert -> recompute aggregates.  Tokens are processed sequentially with
a short pause in between to bound RPC load.

Backoff: a failed head fetch doubles the inter-cycle delay (base 10s, capped
at 120s); a successful one resets it.  Per-token failures are logged and
retried on the next cycle without touching the backoff.

Reorgs are not detected; the confirmation depth is the only mitigation.

Usage:
    indexer = TransferIndexer(rpc_client, store)
    asyncio.create_task(indexer.run())
"""

from __future__ import annotations

import asyncio
import dataclasses
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from web3 import Web3

from chain.rpc_client import RpcError
from config.loader import get_config
from core.aggregator import NetFlowAggregator
from core.classifier import classify_direction, normalize_address_set
from core.log_decoder import decode_transfer, scale_amount
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import (
    DEFAULT_BACKFILL_WINDOW_BLOCKS,
    DEFAULT_BASE_RETRY_DELAY_SECONDS,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_LOOKBACK_WINDOW_BLOCKS,
    DEFAULT_MAX_RETRY_DELAY_SECONDS,
    DEFAULT_TOKEN_DECIMALS,
    DEFAULT_TOKEN_PAUSE_SECONDS,
)
from shared.serialization_utils import utc_now_iso
from shared.types import (
    IndexerPhase,
    IndexerStatus,
    RawLog,
    TrackedToken,
    Transfer,
    TransferDirection,
)

if TYPE_CHECKING:
    from chain.rpc_client import RpcClient
    from storage.transfer_store import TransferStore


def load_tracked_tokens(chain_cfg: dict[str, Any]) -> list[TrackedToken]:
    """Build the token list from chain config, checksummed and de-duplicated."""
    tokens: list[TrackedToken] = []
    seen: set[str] = set()
    for entry in chain_cfg.get("tokens", []):
        address = Web3.to_checksum_address(entry["address"])
        if address in seen:
            continue
        seen.add(address)
        tokens.append(
            TrackedToken(
                address=address,
                symbol=entry.get("symbol", ""),
                decimals=int(entry.get("decimals", DEFAULT_TOKEN_DECIMALS)),
            )
        )
    return tokens


class TransferIndexer:
    """
    Backfill-then-poll ingestion loop.

    Drives every write to the store; nothing else writes.
    """

    def __init__(
        self,
        rpc_client: RpcClient,
        store: TransferStore,
        aggregator: NetFlowAggregator | None = None,
    ) -> None:
        self._rpc = rpc_client
        self._store = store
        self._aggregator = aggregator or NetFlowAggregator(store)

        cfg = get_config()
        chain_cfg = cfg.get_chain_config()
        timing_cfg = cfg.get_timing_config().get("indexer", {})

        self._confirmations: int = int(chain_cfg.get("confirmations", DEFAULT_CONFIRMATIONS))
        self._tokens = load_tracked_tokens(chain_cfg)
        self._watched = normalize_address_set(
            entry["address"] for entry in chain_cfg.get("watched_addresses", [])
        )

        self._backfill_window: int = int(
            timing_cfg.get("backfill_window_blocks", DEFAULT_BACKFILL_WINDOW_BLOCKS)
        )
        self._lookback_window: int = int(
            timing_cfg.get("lookback_window_blocks", DEFAULT_LOOKBACK_WINDOW_BLOCKS)
        )
        self._token_pause: float = float(
            timing_cfg.get("token_pause_seconds", DEFAULT_TOKEN_PAUSE_SECONDS)
        )
        self._base_retry_delay: float = float(
            timing_cfg.get("base_retry_delay_seconds", DEFAULT_BASE_RETRY_DELAY_SECONDS)
        )
        self._max_retry_delay: float = float(
            timing_cfg.get("max_retry_delay_seconds", DEFAULT_MAX_RETRY_DELAY_SECONDS)
        )

        # Mutable state
        self._retry_delay: float = self._base_retry_delay
        self._running: bool = False
        self._status = IndexerStatus(retry_delay_seconds=self._retry_delay)

        self._logger = setup_module_logger(
            "indexer", "indexer.log", module_folder="Indexer_Logs"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def tokens(self) -> list[TrackedToken]:
        return list(self._tokens)

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    @property
    def status(self) -> IndexerStatus:
        """Snapshot of loop progress, safe to hand to readers."""
        return dataclasses.replace(self._status, failed_tokens=list(self._status.failed_tokens))

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Backfill once, then poll until stopped; launch as an asyncio.Task."""
        self._running = True
        self._logger.info(
            "Indexer started: %d tokens, %d watched addresses, confirmations=%d, "
            "backfill=%d blocks, lookback=%d blocks",
            len(self._tokens),
            len(self._watched),
            self._confirmations,
            self._backfill_window,
            self._lookback_window,
        )
        try:
            await self.backfill()
            self._status.phase = IndexerPhase.POLLING

            while self._running:
                await self.poll_once()
                await asyncio.sleep(self._retry_delay)
        except asyncio.CancelledError:
            self._logger.info("Indexer cancelled")
            raise
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the run loop to stop after the current cycle."""
        self._running = False

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def backfill(self) -> int | None:
        """
        Best-effort historical scan; skipped (not retried) if the head is unavailable.

        Returns the number of transfers written, or None when skipped.
        """
        self._status.phase = IndexerPhase.BACKFILLING
        try:
            latest_block = await self._rpc.get_latest_block()
        except RpcError as exc:
            self._logger.warning("Failed to get latest block for backfill, skipping: %s", exc)
            self._increase_backoff()
            return None

        self._reset_backoff()
        target_block = self._confirmed_target(latest_block)
        start_block = max(target_block - self._backfill_window, 0)
        self._record_head(latest_block, target_block)

        self._logger.info("Backfill: scanning %d -> %d", start_block, target_block)
        total = await self._scan_all_tokens(start_block, target_block)
        self._logger.info("Backfill complete: %d transfers", total)
        return total

    async def poll_once(self) -> int | None:
        """
        One polling cycle over the lookback window below the confirmed head.

        Returns the number of transfers written, or None if the head fetch failed.
        """
        try:
            latest_block = await self._rpc.get_latest_block()
        except RpcError as exc:
            self._increase_backoff()
            self._logger.warning(
                "RPC failed this round: %s (next attempt in %.0fs)", exc, self._retry_delay
            )
            return None

        self._reset_backoff()
        target_block = self._confirmed_target(latest_block)
        start_block = max(target_block - self._lookback_window, 0)
        self._record_head(latest_block, target_block)

        self._logger.info("Live: block %d (scanning %d -> %d)", latest_block, start_block, target_block)
        total = await self._scan_all_tokens(start_block, target_block)

        self._status.cycles_completed += 1
        self._status.last_cycle_at = datetime.now(timezone.utc)
        self._logger.info("Completed block %d -> %d transfers", target_block, total)
        return total

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _scan_all_tokens(self, from_block: int, to_block: int) -> int:
        total = 0
        failed: list[str] = []
        for i, token in enumerate(self._tokens):
            if i > 0 and self._token_pause > 0:
                await asyncio.sleep(self._token_pause)
            written = await self.scan_token(token, from_block, to_block)
            if written is None:
                failed.append(token.address)
            else:
                total += written
        self._status.failed_tokens = failed
        return total

    async def scan_token(self, token: TrackedToken, from_block: int, to_block: int) -> int | None:
        """
        Fetch, decode, classify and persist one token's transfers over a block range.

        Returns the number of transfers written, or None if the fetch or the
        batch write failed (nothing from this batch is committed then).
        """
        context = {"token": token.address, "from_block": from_block, "to_block": to_block}
        try:
            logs = await self._rpc.get_transfer_logs(token.address, from_block, to_block)
        except RpcError as exc:
            self._logger.warning(
                "Fetch logs failed for %s (%d -> %d): %s",
                token.address,
                from_block,
                to_block,
                exc,
                extra=context,
            )
            return None

        transfers = self._build_transfers(token, logs)

        try:
            written = await self._store.upsert_transfers(transfers)
        except sqlite3.Error as exc:
            self._logger.error(
                "Batch write rolled back for %s (%d -> %d, %d transfers): %s",
                token.address,
                from_block,
                to_block,
                len(transfers),
                exc,
                extra=context,
            )
            return None

        try:
            await self._aggregator.recompute()
        except sqlite3.Error as exc:
            # Transfers are committed; the next successful cycle recomputes.
            self._logger.error(
                "Aggregator failed after %s batch: %s", token.address, exc, extra=context
            )

        self._logger.info(
            "Indexed %s %d -> %d: %d logs, %d transfers",
            token.symbol or token.address,
            from_block,
            to_block,
            len(logs),
            written,
        )
        return written

    def _build_transfers(self, token: TrackedToken, logs: list[RawLog]) -> list[Transfer]:
        recorded_at = utc_now_iso()
        transfers: list[Transfer] = []
        skipped = 0
        for log in logs:
            decoded = decode_transfer(log)
            if decoded is None:
                skipped += 1
                self._logger.debug(
                    "Skipping undecodable log tx=%s topics=%d",
                    log.transaction_hash,
                    len(log.topics),
                    extra={"token": token.address, "tx_hash": log.transaction_hash},
                )
                continue

            direction = classify_direction(decoded, self._watched)
            if direction is None:
                continue

            amount = scale_amount(decoded.value, token.decimals)
            self._logger.debug(
                "%s %s %s (block %d, tx %s)",
                "Inflow" if direction is TransferDirection.IN else "Outflow",
                amount,
                token.symbol or token.address,
                decoded.block_number,
                decoded.tx_hash,
            )
            transfers.append(
                Transfer(
                    tx_hash=decoded.tx_hash,
                    block_number=decoded.block_number,
                    log_index=decoded.log_index,
                    token_address=token.address,
                    from_address=decoded.from_address,
                    to_address=decoded.to_address,
                    amount=amount,
                    direction=direction,
                    timestamp=recorded_at,
                )
            )

        if skipped:
            self._logger.warning(
                "Skipped %d malformed logs for %s", skipped, token.address,
                extra={"token": token.address},
            )
        return transfers

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _confirmed_target(self, latest_block: int) -> int:
        return max(latest_block - self._confirmations, 0)

    def _record_head(self, latest_block: int, target_block: int) -> None:
        self._status.last_latest_block = latest_block
        self._status.last_target_block = target_block

    def _increase_backoff(self) -> None:
        self._retry_delay = min(self._retry_delay * 2, self._max_retry_delay)
        self._status.retry_delay_seconds = self._retry_delay

    def _reset_backoff(self) -> None:
        self._retry_delay = self._base_retry_delay
        self._status.retry_delay_seconds = self._retry_delay
