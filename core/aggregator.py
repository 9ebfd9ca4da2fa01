"""
Per-token net-flow aggregation.

Recomputes every token's cumulative net flow wholesale from the transfer
table: sum(IN) - sum(OUT), in Decimal arithmetic.  Runs right after each
committed transfer batch, as its own transaction, so a crash in between only
leaves the aggregate stale until the next successful cycle.

Usage:
    aggregator = NetFlowAggregator(store)
    netflows = await aggregator.recompute()
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import TYPE_CHECKING

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import DECIMAL_CONTEXT
from shared.serialization_utils import parse_decimal, utc_now_iso
from shared.types import NetFlow, TransferDirection

if TYPE_CHECKING:
    from storage.transfer_store import TransferStore


def compute_netflows(
    rows: Iterable[tuple[str, str, str, int]],
) -> dict[str, tuple[Decimal, int]]:
    """
    Fold (token, direction, amount, block) rows into {token: (net, last_block)}.

    Pure function; amounts arrive as stored decimal strings.
    """
    totals: dict[str, tuple[Decimal, int]] = {}
    for token, direction, amount, block_number in rows:
        net, last_block = totals.get(token, (Decimal("0"), 0))
        value = parse_decimal(amount)
        if direction == TransferDirection.IN.value:
            net = DECIMAL_CONTEXT.add(net, value)
        elif direction == TransferDirection.OUT.value:
            net = DECIMAL_CONTEXT.subtract(net, value)
        totals[token] = (net, max(last_block, block_number))
    return totals


class NetFlowAggregator:
    """Derives the netflows table from the transfers table."""

    def __init__(self, store: TransferStore) -> None:
        self._store = store
        self._logger = setup_module_logger(
            "aggregator", "aggregator.log", module_folder="Aggregator_Logs"
        )

    async def recompute(self) -> list[NetFlow]:
        """Recompute and persist the aggregate for every token with transfers."""
        rows = await self._store.load_transfer_amounts()
        totals = compute_netflows(rows)

        updated_at = utc_now_iso()
        netflows = [
            NetFlow(
                token_address=token,
                cumulative_net=net,
                last_block=last_block,
                updated_at=updated_at,
            )
            for token, (net, last_block) in totals.items()
        ]
        await self._store.upsert_netflows(netflows)

        for nf in netflows:
            self._logger.info(
                "Updated netflow for %s => %s (last block %d)",
                nf.token_address,
                nf.cumulative_net,
                nf.last_block,
            )
        return netflows
