"""
SQLite persistence for classified transfers and per-token net flows.

Single-writer discipline: one dedicated writer connection, serialized by an
asyncio.Lock, carries every write transaction.  Reads open short-lived
connections of their own, so under WAL journaling they see the last
committed snapshot and never a half-written batch.  All blocking sqlite
calls run in worker threads via asyncio.to_thread.

Amounts are stored as decimal strings, never REAL.

Usage:
    from storage.transfer_store import TransferStore

    store = TransferStore("data/netflow.db")
    await store.upsert_transfers(batch)
    netflow = await store.query_netflow(token)
    await store.close()
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Iterable
from contextlib import closing
from decimal import Decimal
from pathlib import Path
from typing import Any, TypeVar

from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_TRANSFER_LIMIT
from shared.serialization_utils import decimal_to_str, parse_decimal, utc_now_iso
from shared.types import NetFlow, Transfer, TransferDirection

_T = TypeVar("_T")

_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS exchanges (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT UNIQUE NOT NULL,
        label TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS transfers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        block_number INTEGER NOT NULL CHECK (block_number >= 0),
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL CHECK (log_index >= 0),
        token_address TEXT NOT NULL,
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        direction TEXT NOT NULL CHECK (direction IN ('IN', 'OUT')),
        timestamp TEXT NOT NULL,
        UNIQUE (tx_hash, log_index, token_address)
    );

    CREATE INDEX IF NOT EXISTS idx_transfers_token_block
        ON transfers (token_address COLLATE NOCASE, block_number DESC);

    CREATE TABLE IF NOT EXISTS netflows (
        token_address TEXT NOT NULL PRIMARY KEY,
        cumulative_net TEXT NOT NULL,
        last_block INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    );
"""

_UPSERT_TRANSFER_SQL = """
    INSERT INTO transfers
        (block_number, tx_hash, log_index, token_address,
         from_address, to_address, amount, direction, timestamp)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (tx_hash, log_index, token_address) DO UPDATE SET
        amount = excluded.amount,
        direction = excluded.direction,
        timestamp = excluded.timestamp
"""

_UPSERT_NETFLOW_SQL = """
    INSERT INTO netflows (token_address, cumulative_net, last_block, updated_at)
    VALUES (?, ?, ?, ?)
    ON CONFLICT (token_address) DO UPDATE SET
        cumulative_net = excluded.cumulative_net,
        last_block = excluded.last_block,
        updated_at = excluded.updated_at
"""

_UPSERT_LABEL_SQL = """
    INSERT INTO exchanges (address, label) VALUES (?, ?)
    ON CONFLICT (address) DO UPDATE SET label = excluded.label
"""


class TransferStore:
    """
    Durable transfer table plus derived per-token net-flow table.

    Only the indexing loop writes; the read API calls the ``query_*`` methods.
    """

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            db_path = get_config().get_db_path()

        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._db = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

        self._write_lock = asyncio.Lock()
        self._closed = False

        self._logger = setup_module_logger(
            "transfer_store", "transfer_store.log", module_folder="Storage_Logs"
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        """Create SQLite tables if they don't exist."""
        self._db.executescript(_SCHEMA_SQL)
        self._db.commit()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _run_write(self, fn: Callable[..., _T], *args: Any) -> _T:
        """Run one write transaction on the writer connection, one at a time."""
        async with self._write_lock:
            if self._closed:
                raise sqlite3.ProgrammingError("TransferStore is closed")
            future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                # Hold the lock until the worker thread has committed or rolled back.
                await asyncio.wait([future])
                if future.exception() is not None:
                    self._logger.error(
                        "Write interrupted by cancellation failed: %s", future.exception()
                    )
                raise

    def _write_transfers(self, transfers: list[Transfer]) -> None:
        with self._db:
            for transfer in transfers:
                self._db.execute(_UPSERT_TRANSFER_SQL, self._transfer_row(transfer))

    def _write_netflows(self, netflows: list[NetFlow]) -> None:
        with self._db:
            self._db.executemany(
                _UPSERT_NETFLOW_SQL,
                [
                    (
                        nf.token_address,
                        decimal_to_str(nf.cumulative_net),
                        nf.last_block,
                        nf.updated_at,
                    )
                    for nf in netflows
                ],
            )

    def _write_labels(self, labels: list[tuple[str, str]]) -> None:
        with self._db:
            self._db.executemany(_UPSERT_LABEL_SQL, labels)

    @staticmethod
    def _transfer_row(transfer: Transfer) -> tuple[Any, ...]:
        return (
            transfer.block_number,
            transfer.tx_hash,
            transfer.log_index,
            transfer.token_address,
            transfer.from_address,
            transfer.to_address,
            decimal_to_str(transfer.amount),
            transfer.direction.value,
            transfer.timestamp,
        )

    async def upsert_transfers(self, transfers: list[Transfer]) -> int:
        """
        Upsert a batch of transfers in a single transaction.

        Either every row commits or none does; a key collision overwrites
        amount, direction and timestamp.  Returns the number of rows written.
        """
        if not transfers:
            return 0
        await self._run_write(self._write_transfers, list(transfers))
        return len(transfers)

    async def upsert_transfer(self, transfer: Transfer) -> None:
        """Upsert one transfer (its own transaction)."""
        await self.upsert_transfers([transfer])

    async def upsert_netflows(self, netflows: list[NetFlow]) -> None:
        """Write a whole aggregation pass in one transaction (last writer wins)."""
        if not netflows:
            return
        await self._run_write(self._write_netflows, list(netflows))

    async def upsert_netflow(self, token_address: str, net: Decimal, last_block: int) -> NetFlow:
        """Insert or overwrite the aggregate row for one token."""
        netflow = NetFlow(
            token_address=token_address,
            cumulative_net=net,
            last_block=last_block,
            updated_at=utc_now_iso(),
        )
        await self.upsert_netflows([netflow])
        return netflow

    async def upsert_watched_labels(self, labels: dict[str, str]) -> None:
        """Record human-readable labels for watched addresses."""
        if not labels:
            return
        await self._run_write(self._write_labels, list(labels.items()))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _read(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with closing(sqlite3.connect(self._db_path, timeout=30)) as conn:
            conn.row_factory = sqlite3.Row
            return conn.execute(sql, tuple(params)).fetchall()

    async def load_transfer_amounts(self) -> list[tuple[str, str, str, int]]:
        """All (token_address, direction, amount, block_number) rows, grouped by token."""
        rows = await asyncio.to_thread(
            self._read,
            """SELECT token_address, direction, amount, block_number
               FROM transfers ORDER BY token_address""",
        )
        return [
            (r["token_address"], r["direction"], r["amount"], r["block_number"]) for r in rows
        ]

    async def query_netflow(self, token_address: str) -> NetFlow:
        """
        Aggregate row for a token (case-insensitive).

        An unseen token yields a zero-valued record rather than an error.
        """
        rows = await asyncio.to_thread(
            self._read,
            """SELECT token_address, cumulative_net, last_block, updated_at
               FROM netflows WHERE token_address = ? COLLATE NOCASE""",
            (token_address,),
        )
        if not rows:
            return NetFlow(
                token_address=token_address,
                cumulative_net=Decimal("0"),
                last_block=0,
                updated_at=utc_now_iso(),
            )
        row = rows[0]
        return NetFlow(
            token_address=row["token_address"],
            cumulative_net=parse_decimal(row["cumulative_net"]),
            last_block=row["last_block"],
            updated_at=row["updated_at"],
        )

    async def query_recent_transfers(
        self, token_address: str, limit: int = DEFAULT_TRANSFER_LIMIT
    ) -> list[Transfer]:
        """Most recent transfers for a token, highest block first."""
        rows = await asyncio.to_thread(
            self._read,
            """SELECT tx_hash, block_number, log_index, token_address, from_address,
                      to_address, amount, direction, timestamp
               FROM transfers
               WHERE token_address = ? COLLATE NOCASE
               ORDER BY block_number DESC, log_index DESC
               LIMIT ?""",
            (token_address, limit),
        )
        return [
            Transfer(
                tx_hash=r["tx_hash"],
                block_number=r["block_number"],
                log_index=r["log_index"],
                token_address=r["token_address"],
                from_address=r["from_address"],
                to_address=r["to_address"],
                amount=parse_decimal(r["amount"]),
                direction=TransferDirection(r["direction"]),
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the writer connection once any in-flight write has finished."""
        async with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._db.close()
            self._logger.debug("TransferStore database closed")
