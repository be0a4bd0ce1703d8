"""
Serialization utilities for the market filters client.

Provides JSON encoding for Decimal, HexBytes, large integers, and the
dataclasses handed to listener callbacks.

Usage:
    from shared.serialization_utils import DecimalEncoder
    json.dumps(decoded_event, cls=DecimalEncoder)
"""

import dataclasses
import json
from decimal import Decimal
from json import JSONEncoder
from typing import Any

from shared.types import FilterEntry


class DecimalEncoder(JSONEncoder):
    """
    Custom JSON encoder handling Decimal, HexBytes, large integers, and web3.py types.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    # IEEE 754 double precision safe integer limit
    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        # HexBytes from web3.py (topics, tx hashes, block hashes)
        if isinstance(obj, bytes):
            return "0x" + bytes(obj).hex()
        # Registry snapshots: the heartbeat task is reported as a flag
        if isinstance(obj, FilterEntry):
            return {"id": obj.filter_id, "heartbeat": obj.heartbeat is not None}
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        # web3.py AttributeDict (log and block responses)
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Override encode to convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """
        Recursively convert integers exceeding IEEE 754 safe limits to strings.

        Raw uint256 words (trade ids, periods decoded as integers) can exceed
        JavaScript Number.MAX_SAFE_INTEGER on the consumer side.
        """
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, bool):
            return obj
        elif isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def to_json(obj: Any) -> str:
    """Serialize a decoded message or registry snapshot for logging."""
    return json.dumps(obj, cls=DecimalEncoder)
