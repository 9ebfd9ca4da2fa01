"""
Shared pytest configuration and fixtures for net-flow indexer tests.

Provides sample addresses, raw log builders, standard configs and a
temp-file TransferStore.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from web3 import Web3

from shared.constants import TRANSFER_TOPIC
from shared.types import RawLog, Transfer, TransferDirection

# ---------------------------------------------------------------------------
# Sample addresses
# ---------------------------------------------------------------------------

SAMPLE_TOKEN = Web3.to_checksum_address("0x65e64963f9c5a663e7d7e986de45a9d8324ac0ce")
SECOND_TOKEN = Web3.to_checksum_address("0x7ceb23fd6bc0add59e62ac25578270cff1b9f619")
WATCHED_ADDRESS = Web3.to_checksum_address("0xe7804c37c13166ff0b37f5ae0bb07a3aebb6e245")
OTHER_ADDRESS = "0x1111111111111111111111111111111111111111"
THIRD_ADDRESS = "0x2222222222222222222222222222222222222222"

ONE_TOKEN = 10**18


# ---------------------------------------------------------------------------
# Raw log helpers
# ---------------------------------------------------------------------------


def pad_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def make_raw_log(
    from_address: str = OTHER_ADDRESS,
    to_address: str = WATCHED_ADDRESS,
    value: int = ONE_TOKEN,
    block_number: int = 100,
    log_index: int = 0,
    tx_hash: str = "0xaaa",
    token: str = SAMPLE_TOKEN,
) -> RawLog:
    return RawLog(
        address=token,
        topics=[TRANSFER_TOPIC, pad_topic(from_address), pad_topic(to_address)],
        data="0x" + format(value, "064x"),
        block_number=hex(block_number),
        transaction_hash=tx_hash,
        log_index=hex(log_index),
    )


def make_rpc_log(**kwargs) -> dict:
    """The same log in eth_getLogs wire form."""
    log = make_raw_log(**kwargs)
    return {
        "address": log.address,
        "topics": log.topics,
        "data": log.data,
        "blockNumber": log.block_number,
        "transactionHash": log.transaction_hash,
        "logIndex": log.log_index,
    }


def make_transfer(
    tx_hash: str = "0xaaa",
    block_number: int = 100,
    log_index: int = 0,
    token_address: str = SAMPLE_TOKEN,
    amount: str = "1",
    direction: TransferDirection = TransferDirection.IN,
    from_address: str = OTHER_ADDRESS,
    to_address: str = WATCHED_ADDRESS,
) -> Transfer:
    return Transfer(
        tx_hash=tx_hash,
        block_number=block_number,
        log_index=log_index,
        token_address=token_address,
        from_address=from_address,
        to_address=to_address,
        amount=Decimal(amount),
        direction=direction,
        timestamp="2024-01-01T00:00:00+00:00",
    )


# ---------------------------------------------------------------------------
# Standard mock configs (can be overridden per test)
# ---------------------------------------------------------------------------

STANDARD_CHAIN_CONFIG = {
    "chain_name": "polygon",
    "rpc": {"http_url": "https://rpc.test"},
    "confirmations": 2,
    "tokens": [{"address": SAMPLE_TOKEN, "symbol": "POL", "decimals": 18}],
    "watched_addresses": [{"address": WATCHED_ADDRESS, "label": "Binance Hot Wallet"}],
}

STANDARD_TIMING_CONFIG = {
    "indexer": {
        "backfill_window_blocks": 5000,
        "lookback_window_blocks": 100,
        "token_pause_seconds": 0,
        "base_retry_delay_seconds": 10,
        "max_retry_delay_seconds": 120,
    },
    "rpc": {
        "block_number_timeout_seconds": 10,
        "get_logs_timeout_seconds": 15,
        "block_number_attempts": 3,
        "block_number_retry_delay_seconds": 0,
    },
}


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_chain_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_chain_config.return_value = {
        **STANDARD_CHAIN_CONFIG,
        "tokens": [dict(t) for t in STANDARD_CHAIN_CONFIG["tokens"]],
    }
    loader.get_timing_config.return_value = {
        "indexer": dict(STANDARD_TIMING_CONFIG["indexer"]),
        "rpc": dict(STANDARD_TIMING_CONFIG["rpc"]),
    }
    loader.get_app_config.return_value = {
        "logging": {"log_dir": "logs"},
        "storage": {"db_path": "data/netflow.db"},
        "api": {"host": "127.0.0.1", "port": 8080},
    }
    return loader


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_path():
    """Create a temporary database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(OSError):
            os.unlink(path + suffix)


@pytest.fixture
async def store(db_path):
    """TransferStore on a temp database with a silenced logger."""
    with patch("storage.transfer_store.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from storage.transfer_store import TransferStore

        s = TransferStore(db_path=db_path)
    yield s
    await s.close()
