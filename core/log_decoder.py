"""
ERC-20 Transfer log decoding.

Turns one raw ``eth_getLogs`` entry into a ``DecodedTransfer``.  Malformed
entries are rejected by returning None so a single bad log never fails
the rest of its batch.

Layout of a Transfer(address indexed from, address indexed to, uint256 value) log:
    topics[0]  event signature hash
    topics[1]  sender, left-padded to 32 bytes
    topics[2]  recipient, left-padded to 32 bytes
    data       value, big-endian uint256

Known precision-loss edge case: a ``data`` payload that does not parse as
hex decodes to a value of 0 instead of rejecting the log.
"""

from __future__ import annotations

import re
from decimal import Decimal

from web3 import Web3

from shared.constants import (
    ADDRESS_BYTES,
    DECIMAL_CONTEXT,
    MIN_TRANSFER_TOPICS,
    TOPIC_BYTES,
)
from shared.types import DecodedTransfer, RawLog

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")


def _strip_hex_prefix(value: str) -> str:
    value = value.strip()
    if value[:2] in ("0x", "0X"):
        return value[2:]
    return value


def topic_to_address(topic: str) -> str | None:
    """Extract the low 20 bytes of a 32-byte topic as a checksum address."""
    try:
        raw = bytes.fromhex(_strip_hex_prefix(topic))
    except ValueError:
        return None
    if len(raw) != TOPIC_BYTES:
        return None
    return Web3.to_checksum_address(raw[TOPIC_BYTES - ADDRESS_BYTES :])


def parse_hex_int(value: str) -> int | None:
    """Parse a hex-encoded unsigned integer; None when empty or unparsable."""
    digits = _strip_hex_prefix(value)
    # int() alone would also take a sign or underscores
    if not _HEX_DIGITS.fullmatch(digits):
        return None
    return int(digits, 16)


def decode_transfer(log: RawLog) -> DecodedTransfer | None:
    """Decode a Transfer log, or return None if the entry is malformed."""
    if len(log.topics) < MIN_TRANSFER_TOPICS:
        return None

    from_address = topic_to_address(log.topics[1])
    to_address = topic_to_address(log.topics[2])
    if from_address is None or to_address is None:
        return None

    block_number = parse_hex_int(log.block_number)
    if block_number is None:
        return None

    value = parse_hex_int(log.data)
    if value is None:
        value = 0

    if log.log_index.strip():
        log_index = parse_hex_int(log.log_index)
        if log_index is None:
            return None
    else:
        log_index = 0

    return DecodedTransfer(
        from_address=from_address,
        to_address=to_address,
        value=value,
        block_number=block_number,
        tx_hash=log.transaction_hash,
        log_index=log_index,
    )


def scale_amount(value: int, decimals: int) -> Decimal:
    """Convert raw token units to whole tokens (exact, no float rounding)."""
    return DECIMAL_CONTEXT.divide(Decimal(value), Decimal(10**decimals))
