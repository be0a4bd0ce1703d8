"""
Shared data types for the market filters client.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FieldKind(Enum):
    ADDRESS = "address"  # 20-byte account, zero-padded hex
    FIXED = "fixed"  # int256 scaled by 1e18 -> decimal string
    INT = "int"  # uint256 -> native int
    BOOL = "bool"  # 0/1 -> native bool
    HASH = "hash"  # bytes32 -> 0x-prefixed hex
    TAG = "tag"  # bytes32 ASCII text, null-padded
    TRADE_TYPE = "trade_type"  # 1/2 -> "buy"/"sell"


class TransportMode(Enum):
    POLL = "poll"
    PUSH = "push"


# ---------------------------------------------------------------------------
# Filter State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FilterEntry:
    filter_id: str | None = None
    heartbeat: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self.filter_id is not None


# ---------------------------------------------------------------------------
# Event Schemas
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventField:
    name: str
    kind: FieldKind
    indexed: bool = False


@dataclass(frozen=True)
class EventSchema:
    label: str
    contract: str
    topic: str  # 0x-prefixed, lowercase keccak of the event signature
    inputs: tuple[EventField, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class BlockHeader:
    number: int | None
    hash: str
    parent_hash: str | None
    timestamp: int | None


# ---------------------------------------------------------------------------
# RPC Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RPCError:
    """Error value handed to listener callbacks instead of a filter id."""

    error: Any
    message: str

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> RPCError:
        error = response.get("error")
        if isinstance(error, dict):
            return cls(error=error.get("code"), message=str(error.get("message", "")))
        return cls(error=error, message=str(response.get("message", "")))


FILTER_NOT_CREATED = RPCError(error="FILTER_NOT_CREATED", message="Filter could not be created")
