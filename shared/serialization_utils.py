"""
Serialization utilities for the net-flow indexer.

Decimal amounts are persisted and served as plain decimal strings
("1", "-0.25"), never as binary floats or scientific notation.

Usage:
    from shared.serialization_utils import decimal_to_str, parse_decimal
    row_value = decimal_to_str(amount)
"""

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from json import JSONEncoder
from typing import Any

from shared.constants import DECIMAL_CONTEXT


def decimal_to_str(value: Decimal) -> str:
    """Render a Decimal as a fixed-point string without trailing zeros."""
    normalized = value.normalize(DECIMAL_CONTEXT)
    if normalized.is_zero():
        return "0"
    return format(normalized, "f")


def parse_decimal(value: Any) -> Decimal:
    """Parse a stored decimal string. Unparsable or missing values read as zero."""
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DecimalEncoder(JSONEncoder):
    """JSON encoder handling Decimal, Enum and datetime values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return decimal_to_str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return "0x" + obj.hex()
        return super().default(obj)


def dumps(data: Any) -> str:
    return json.dumps(data, cls=DecimalEncoder)
