"""
Directional classification of decoded transfers against the watched-address set.
"""

from __future__ import annotations

from collections.abc import Iterable

from shared.types import DecodedTransfer, TransferDirection


def normalize_address(address: str) -> str:
    return address.strip().lower()


def normalize_address_set(addresses: Iterable[str]) -> frozenset[str]:
    """Build a case-insensitive lookup set from configured addresses."""
    return frozenset(normalize_address(a) for a in addresses if a and a.strip())


def classify_direction(
    transfer: DecodedTransfer, watched: frozenset[str]
) -> TransferDirection | None:
    """
    IN if the recipient is watched, else OUT if the sender is watched,
    else None (not relevant, discard).

    A transfer between two watched addresses classifies as IN.
    ``watched`` must already be normalized via ``normalize_address_set``.
    """
    if normalize_address(transfer.to_address) in watched:
        return TransferDirection.IN
    if normalize_address(transfer.from_address) in watched:
        return TransferDirection.OUT
    return None
