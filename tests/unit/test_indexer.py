"""
Unit tests for core/indexer.py.

The RPC client is mocked; the store and aggregator are real (temp-file
SQLite).  Tests cover scan range arithmetic near genesis, the end-to-end
decode -> classify -> persist -> aggregate path, idempotent rescans,
backoff doubling/capping/reset, per-token failure isolation, and the run
loop's stop and cancellation behaviour.
"""

from __future__ import annotations

import asyncio
import dataclasses
import sqlite3
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from conftest import (
    OTHER_ADDRESS,
    SAMPLE_TOKEN,
    SECOND_TOKEN,
    THIRD_ADDRESS,
    WATCHED_ADDRESS,
    make_raw_log,
)

from chain.rpc_client import RpcError
from core.aggregator import NetFlowAggregator
from shared.types import IndexerPhase, RawLog, TransferDirection

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_rpc():
    rpc = MagicMock()
    rpc.get_latest_block = AsyncMock(return_value=102)
    rpc.get_transfer_logs = AsyncMock(return_value=[])
    return rpc


def _make_indexer(loader, rpc, store, aggregator=None):
    with patch("core.indexer.get_config") as mock_cfg, patch(
        "core.indexer.setup_module_logger"
    ) as mock_logger, patch("core.aggregator.setup_module_logger") as mock_agg_logger:
        mock_cfg.return_value = loader
        mock_logger.return_value = MagicMock()
        mock_agg_logger.return_value = MagicMock()
        from core.indexer import TransferIndexer

        return TransferIndexer(rpc, store, aggregator or NetFlowAggregator(store))


@pytest.fixture
def indexer(mock_config_loader, mock_rpc, store):
    return _make_indexer(mock_config_loader, mock_rpc, store)


@pytest.fixture
def two_token_loader(mock_config_loader):
    chain = mock_config_loader.get_chain_config.return_value
    chain["tokens"] = [
        {"address": SAMPLE_TOKEN, "symbol": "POL", "decimals": 18},
        {"address": SECOND_TOKEN, "symbol": "WETH", "decimals": 18},
    ]
    return mock_config_loader


# ---------------------------------------------------------------------------
# A. Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_tokens_checksummed_and_deduplicated(self, mock_config_loader, mock_rpc, store):
        chain = mock_config_loader.get_chain_config.return_value
        chain["tokens"] = [
            {"address": SAMPLE_TOKEN.lower(), "symbol": "POL"},
            {"address": SAMPLE_TOKEN, "symbol": "POL"},
        ]
        idx = _make_indexer(mock_config_loader, mock_rpc, store)
        assert [t.address for t in idx.tokens] == [SAMPLE_TOKEN]
        assert idx.tokens[0].decimals == 18

    def test_initial_status(self, indexer):
        status = indexer.status
        assert status.phase == IndexerPhase.BACKFILLING
        assert status.retry_delay_seconds == 10
        assert status.cycles_completed == 0


# ---------------------------------------------------------------------------
# B. Scan ranges
# ---------------------------------------------------------------------------


class TestScanRanges:
    async def test_poll_scans_lookback_below_confirmed_head(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.return_value = 1000
        await indexer.poll_once()
        mock_rpc.get_transfer_logs.assert_awaited_once_with(SAMPLE_TOKEN, 898, 998)

    async def test_backfill_window(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.return_value = 10_000
        await indexer.backfill()
        mock_rpc.get_transfer_logs.assert_awaited_once_with(SAMPLE_TOKEN, 4998, 9998)

    async def test_near_genesis_saturates_at_zero(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.return_value = 1
        await indexer.backfill()
        mock_rpc.get_transfer_logs.assert_awaited_once_with(SAMPLE_TOKEN, 0, 0)

    async def test_poll_near_genesis(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.return_value = 50
        await indexer.poll_once()
        mock_rpc.get_transfer_logs.assert_awaited_once_with(SAMPLE_TOKEN, 0, 48)

    async def test_status_records_head(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.return_value = 500
        await indexer.poll_once()
        status = indexer.status
        assert status.last_latest_block == 500
        assert status.last_target_block == 498
        assert status.cycles_completed == 1
        assert status.last_cycle_at is not None


# ---------------------------------------------------------------------------
# C. End-to-end ingestion
# ---------------------------------------------------------------------------


class TestIngestion:
    async def test_inflow_of_one_token(self, indexer, mock_rpc, store):
        mock_rpc.get_transfer_logs.return_value = [
            make_raw_log(from_address=OTHER_ADDRESS, to_address=WATCHED_ADDRESS, value=10**18)
        ]

        written = await indexer.poll_once()

        assert written == 1
        rows = await store.query_recent_transfers(SAMPLE_TOKEN)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("1")
        assert rows[0].direction == TransferDirection.IN
        assert rows[0].token_address == SAMPLE_TOKEN
        nf = await store.query_netflow(SAMPLE_TOKEN)
        assert nf.cumulative_net == Decimal("1")
        assert nf.last_block == 100

    async def test_outflow_reduces_netflow(self, indexer, mock_rpc, store):
        mock_rpc.get_transfer_logs.return_value = [
            make_raw_log(to_address=WATCHED_ADDRESS, value=5 * 10**18, tx_hash="0x1"),
            make_raw_log(
                from_address=WATCHED_ADDRESS,
                to_address=OTHER_ADDRESS,
                value=2 * 10**18,
                tx_hash="0x2",
                block_number=101,
            ),
        ]
        await indexer.poll_once()
        nf = await store.query_netflow(SAMPLE_TOKEN)
        assert nf.cumulative_net == Decimal("3")
        assert nf.last_block == 101

    async def test_rescan_does_not_double_count(self, indexer, mock_rpc, store):
        mock_rpc.get_transfer_logs.return_value = [make_raw_log(value=10**18)]
        await indexer.backfill()
        await indexer.poll_once()
        await indexer.poll_once()
        assert len(await store.query_recent_transfers(SAMPLE_TOKEN)) == 1
        assert (await store.query_netflow(SAMPLE_TOKEN)).cumulative_net == Decimal("1")

    async def test_unrelated_and_malformed_logs_skipped(self, indexer, mock_rpc, store):
        good = make_raw_log(tx_hash="0xgood")
        malformed = RawLog(
            address=SAMPLE_TOKEN,
            topics=good.topics[:1],
            data=good.data,
            block_number=good.block_number,
            transaction_hash="0xbad",
            log_index="0x1",
        )
        unrelated = make_raw_log(
            from_address=OTHER_ADDRESS, to_address=THIRD_ADDRESS, tx_hash="0xother"
        )
        mock_rpc.get_transfer_logs.return_value = [malformed, unrelated, good]

        assert await indexer.poll_once() == 1
        rows = await store.query_recent_transfers(SAMPLE_TOKEN)
        assert [r.tx_hash for r in rows] == ["0xgood"]

    async def test_token_decimals_respected(self, mock_config_loader, mock_rpc, store):
        chain = mock_config_loader.get_chain_config.return_value
        chain["tokens"] = [{"address": SAMPLE_TOKEN, "symbol": "USDC", "decimals": 6}]
        idx = _make_indexer(mock_config_loader, mock_rpc, store)
        mock_rpc.get_transfer_logs.return_value = [make_raw_log(value=2_500_000)]

        await idx.poll_once()

        rows = await store.query_recent_transfers(SAMPLE_TOKEN)
        assert rows[0].amount == Decimal("2.5")

    @pytest.mark.parametrize("field", ["log_index", "block_number"])
    async def test_signed_hex_log_skipped_alone(self, indexer, mock_rpc, store, field):
        good = make_raw_log(tx_hash="0xgood")
        bad = dataclasses.replace(good, transaction_hash="0xbad", **{field: "-0x1"})
        mock_rpc.get_transfer_logs.return_value = [good, bad]

        written = await indexer.poll_once()

        assert written == 1
        assert indexer.status.failed_tokens == []
        rows = await store.query_recent_transfers(SAMPLE_TOKEN)
        assert [r.tx_hash for r in rows] == ["0xgood"]
        nf = await store.query_netflow(SAMPLE_TOKEN)
        assert nf.cumulative_net == Decimal("1")

    async def test_scan_token_skips_underscored_log_index(self, indexer, mock_rpc, store):
        good = make_raw_log(tx_hash="0xgood")
        bad = dataclasses.replace(good, transaction_hash="0xbad", log_index="0x1_0")
        mock_rpc.get_transfer_logs.return_value = [bad, good]

        written = await indexer.scan_token(indexer.tokens[0], 0, 100)

        assert written == 1
        rows = await store.query_recent_transfers(SAMPLE_TOKEN)
        assert [r.tx_hash for r in rows] == ["0xgood"]


# ---------------------------------------------------------------------------
# D. Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    async def test_head_failure_doubles_delay(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.side_effect = RpcError("down")
        assert await indexer.poll_once() is None
        assert indexer.retry_delay == 20
        await indexer.poll_once()
        assert indexer.retry_delay == 40
        mock_rpc.get_transfer_logs.assert_not_awaited()

    async def test_delay_capped(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.side_effect = RpcError("down")
        for _ in range(6):
            await indexer.poll_once()
        assert indexer.retry_delay == 120

    async def test_success_resets_delay(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.side_effect = [RpcError("down"), RpcError("down"), 200]
        await indexer.poll_once()
        await indexer.poll_once()
        assert indexer.retry_delay == 40
        await indexer.poll_once()
        assert indexer.retry_delay == 10
        assert indexer.status.retry_delay_seconds == 10

    async def test_backfill_head_failure_skips_and_doubles(self, indexer, mock_rpc):
        mock_rpc.get_latest_block.side_effect = RpcError("down")
        assert await indexer.backfill() is None
        assert indexer.retry_delay == 20
        mock_rpc.get_transfer_logs.assert_not_awaited()

    async def test_token_failure_does_not_touch_backoff(self, indexer, mock_rpc):
        mock_rpc.get_transfer_logs.side_effect = RpcError("logs failed")
        await indexer.poll_once()
        assert indexer.retry_delay == 10


# ---------------------------------------------------------------------------
# E. Failure isolation
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    async def test_one_token_failure_does_not_block_others(
        self, two_token_loader, mock_rpc, store
    ):
        idx = _make_indexer(two_token_loader, mock_rpc, store)

        async def _logs(token, from_block, to_block):
            if token == SAMPLE_TOKEN:
                raise RpcError("HTTP 429")
            return [make_raw_log(token=SECOND_TOKEN, value=3 * 10**18)]

        mock_rpc.get_transfer_logs.side_effect = _logs

        assert await idx.poll_once() == 1
        assert idx.status.failed_tokens == [SAMPLE_TOKEN]
        assert (await store.query_netflow(SECOND_TOKEN)).cumulative_net == Decimal("3")
        assert (await store.query_netflow(SAMPLE_TOKEN)).cumulative_net == Decimal("0")

    async def test_failed_batch_skips_aggregation(self, mock_config_loader, mock_rpc):
        failing_store = MagicMock()
        failing_store.upsert_transfers = AsyncMock(side_effect=sqlite3.OperationalError("locked"))
        aggregator = MagicMock()
        aggregator.recompute = AsyncMock()
        idx = _make_indexer(mock_config_loader, mock_rpc, failing_store, aggregator)
        mock_rpc.get_transfer_logs.return_value = [make_raw_log()]

        assert await idx.scan_token(idx.tokens[0], 0, 100) is None
        aggregator.recompute.assert_not_awaited()

    async def test_aggregator_failure_keeps_transfers(self, mock_config_loader, mock_rpc, store):
        aggregator = MagicMock()
        aggregator.recompute = AsyncMock(side_effect=sqlite3.OperationalError("busy"))
        idx = _make_indexer(mock_config_loader, mock_rpc, store, aggregator)
        mock_rpc.get_transfer_logs.return_value = [make_raw_log()]

        assert await idx.scan_token(idx.tokens[0], 0, 100) == 1
        assert len(await store.query_recent_transfers(SAMPLE_TOKEN)) == 1

    async def test_tokens_scanned_in_order(self, two_token_loader, mock_rpc, store):
        idx = _make_indexer(two_token_loader, mock_rpc, store)
        await idx.poll_once()
        called = [c.args[0] for c in mock_rpc.get_transfer_logs.await_args_list]
        assert called == [SAMPLE_TOKEN, SECOND_TOKEN]


# ---------------------------------------------------------------------------
# F. Run loop
# ---------------------------------------------------------------------------


class TestRunLoop:
    async def test_backfill_then_poll_until_stopped(self, mock_config_loader, mock_rpc, store):
        mock_config_loader.get_timing_config.return_value["indexer"][
            "base_retry_delay_seconds"
        ] = 0
        idx = _make_indexer(mock_config_loader, mock_rpc, store)

        polls = 0
        original_poll = idx.poll_once

        async def _poll_and_stop():
            nonlocal polls
            polls += 1
            result = await original_poll()
            if polls == 2:
                idx.stop()
            return result

        idx.poll_once = _poll_and_stop

        await asyncio.wait_for(idx.run(), timeout=5)

        assert polls == 2
        # one backfill head fetch plus two polls
        assert mock_rpc.get_latest_block.await_count == 3
        assert idx.status.phase == IndexerPhase.POLLING

    async def test_cancellation_propagates(self, indexer, mock_rpc):
        started = asyncio.Event()

        async def _hang():
            started.set()
            await asyncio.sleep(3600)

        mock_rpc.get_latest_block.side_effect = _hang

        task = asyncio.create_task(indexer.run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# ---------------------------------------------------------------------------
# G. Indexer through to the read API
# ---------------------------------------------------------------------------


class TestServedAmounts:
    async def test_one_token_inflow_served_as_one(self, indexer, mock_rpc, store):
        mock_rpc.get_transfer_logs.return_value = [make_raw_log(value=10**18)]
        assert await indexer.poll_once() == 1

        with patch("api.read_api.setup_module_logger") as mock_logger:
            mock_logger.return_value = MagicMock()
            from api.read_api import create_app

            app = create_app(store, indexer)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            netflow = await client.get("/netflow", params={"token": SAMPLE_TOKEN})
            transfers = await client.get("/transfers", params={"token": SAMPLE_TOKEN})

        assert netflow.status_code == 200
        assert netflow.json()["cumulative_net"] == "1"
        assert netflow.json()["last_block"] == 100
        assert transfers.status_code == 200
        body = transfers.json()
        assert len(body) == 1
        assert body[0]["amount"] == "1"
        assert body[0]["direction"] == "IN"
