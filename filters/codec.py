"""
Event log decoding for the market filters client.

Turns transport-delivered log records into label-specific event dicts using
the static event table from config/abis/events.json. Indexed fields come from
topics[1:], the rest from consecutive 32-byte words of `data`, both in the
order the table declares them. Pure: no I/O besides logging.

Usage:
    codec = EventCodec.from_config()
    label = codec.decode_event_label(log["topics"][0])
    event = codec.decode_event(label, log)
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, localcontext
from typing import Any

from eth_abi.abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from app_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import (
    DECIMAL_PRECISION,
    FILL_LABELS,
    FIXED_POINT_ONE,
    SHORT_FILL_LABEL,
    TRADE_TYPES,
    WORD_SIZE_BYTES,
)
from shared.types import BlockHeader, EventField, EventSchema, FieldKind

# ABI type used to read one 32-byte word for each field kind
_ABI_TYPES: dict[FieldKind, str] = {
    FieldKind.ADDRESS: "address",
    FieldKind.FIXED: "int256",
    FieldKind.INT: "uint256",
    FieldKind.BOOL: "uint256",
    FieldKind.HASH: "bytes32",
    FieldKind.TAG: "bytes32",
    FieldKind.TRADE_TYPE: "uint256",
}


class MessageShapeError(ValueError):
    """Raised when a decoder receives an array that does not hold exactly one record."""

    pass


# ---------------------------------------------------------------------------
# Schema loading
# ---------------------------------------------------------------------------


def load_event_schemas(event_abi: Mapping[str, Any]) -> dict[str, EventSchema]:
    """Build label -> EventSchema from the events.json table.

    The topic is taken verbatim when present, otherwise computed as the
    keccak hash of the event signature.
    """
    schemas: dict[str, EventSchema] = {}
    for label, event in event_abi.items():
        topic = event.get("topic") or Web3.to_hex(Web3.keccak(text=event["signature"]))
        inputs = tuple(
            EventField(
                name=item["name"],
                kind=FieldKind(item["kind"]),
                indexed=bool(item.get("indexed", False)),
            )
            for item in event.get("inputs", [])
        )
        schemas[label] = EventSchema(
            label=label,
            contract=event["contract"],
            topic=topic.lower(),
            inputs=inputs,
        )
    return schemas


# ---------------------------------------------------------------------------
# Field formatting
# ---------------------------------------------------------------------------


def _to_int(value: Any) -> int:
    """Parse an int from a native int, big-endian bytes, or a hex/decimal string."""
    if isinstance(value, int):
        return int(value)
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value).strip()
    negative = text.startswith("-")
    if negative:
        text = text[1:]
    number = int(text, 16) if text.lower().startswith("0x") else int(text)
    return -number if negative else number


def _to_hex(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    if isinstance(value, str):
        return value.lower()
    return value


def format_trade_type(value: Any) -> Any:
    """Map a wire trade type (1/"1"/"0x1" or 2/"2"/"0x2") to "buy"/"sell"."""
    try:
        return TRADE_TYPES.get(_to_int(value), value)
    except ValueError:
        return value


def format_fixed(value: Any) -> str:
    """Convert a 1e18 fixed-point integer to a plain decimal string ('5e17' -> '0.5')."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        amount = Decimal(_to_int(value)) / FIXED_POINT_ONE
        return format(amount.normalize(), "f")


def format_address(value: Any) -> str:
    """Render an address as a lowercase, zero-left-padded 20-byte hex string."""
    if isinstance(value, (bytes, bytearray)):
        number = int.from_bytes(value, "big")
    elif isinstance(value, int):
        number = value
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        number = int(text or "0", 16)
    return "0x" + format(number, "040x")[-40:]


def format_tag(value: Any) -> str:
    """Decode a null-padded bytes32 tag (e.g. a market topic) to text."""
    if isinstance(value, str):
        if not value.startswith("0x"):
            return value
        value = HexBytes(value)
    return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")


def format_field(kind: FieldKind, value: Any) -> Any:
    if kind is FieldKind.ADDRESS:
        return format_address(value)
    if kind is FieldKind.FIXED:
        return format_fixed(value)
    if kind is FieldKind.INT:
        return _to_int(value)
    if kind is FieldKind.BOOL:
        return _to_int(value) != 0
    if kind is FieldKind.HASH:
        if isinstance(value, int):
            return "0x" + format(value, "064x")
        return _to_hex(value)
    if kind is FieldKind.TAG:
        return format_tag(value)
    return format_trade_type(value)


def format_common_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Format the trade fields shared by most events; other keys pass through."""
    formatters = (
        ("sender", format_address),
        ("timestamp", _to_int),
        ("type", format_trade_type),
        ("price", format_fixed),
        ("amount", format_fixed),
    )
    formatted = dict(fields)
    for key, formatter in formatters:
        if formatted.get(key) is not None:
            formatted[key] = formatter(formatted[key])
    return formatted


def _apply_fill_context(label: str, fields: dict[str, Any]) -> None:
    # Short-sell fills carry no type word: they are always sells
    if label not in FILL_LABELS:
        return
    if fields.get("type") is None:
        fields["type"] = "sell"
        fields["isShortSell"] = True
    else:
        fields["type"] = format_trade_type(fields["type"])
        fields.setdefault("isShortSell", label == SHORT_FILL_LABEL)


def _unwrap(message: Any) -> Any:
    if isinstance(message, (list, tuple)):
        if len(message) != 1:
            raise MessageShapeError(f"Expected a single record, got an array of {len(message)}")
        return message[0]
    return message


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class EventCodec:
    """Static label <-> topic table plus the per-label decoders built on it."""

    def __init__(self, schemas: Mapping[str, EventSchema]) -> None:
        self._schemas: dict[str, EventSchema] = dict(schemas)
        self._labels_by_topic: dict[str, str] = {
            schema.topic: label for label, schema in self._schemas.items()
        }
        self._logger = setup_module_logger(
            "event_codec", "event_codec.log", module_folder="Event_Codec_Logs"
        )

    @classmethod
    def from_config(cls) -> EventCodec:
        """Build a codec from config/abis/events.json."""
        return cls(load_event_schemas(get_config().get_event_abi()))

    # ------------------------------------------------------------------
    # Table lookups
    # ------------------------------------------------------------------

    def labels(self) -> list[str]:
        return list(self._schemas)

    def get_schema(self, label: str) -> EventSchema | None:
        return self._schemas.get(label)

    def decode_event_label(self, topic: Any) -> str | None:
        """Reverse-lookup a topic-0 signature hash; None when not in the table."""
        if isinstance(topic, (bytes, bytearray)):
            topic = Web3.to_hex(bytes(topic))
        elif isinstance(topic, str) and not topic.startswith("0x"):
            topic = "0x" + topic
        if not isinstance(topic, str):
            return None
        return self._labels_by_topic.get(topic.lower())

    # ------------------------------------------------------------------
    # Decoders
    # ------------------------------------------------------------------

    def decode_event(self, label: str, message: Any) -> Any:
        """
        Decode one raw log record (or a one-element array of one) for `label`.

        Unknown labels and records that do not match the table are returned
        as-is; only an array of length != 1 raises MessageShapeError.
        """
        record = _unwrap(message)
        schema = self._schemas.get(label)
        if schema is None or not isinstance(record, Mapping):
            return record

        try:
            decoded: dict[str, Any] = {
                "event": label,
                "address": _to_hex(record.get("address")),
                "blockNumber": _optional_int(record.get("blockNumber")),
                "logIndex": _optional_int(record.get("logIndex")),
                "transactionHash": _to_hex(record.get("transactionHash")),
            }
            decoded.update(self.format_event_fields(label, self._read_fields(schema, record)))
        except (DecodingError, ValueError, TypeError) as e:
            self._logger.warning(
                "Failed to decode %s log at block %s: %s", label, record.get("blockNumber"), e
            )
            return record
        return decoded

    def decode_log(self, message: Any) -> Any:
        """Decode a log from any tabled event, picking the label from topics[0]."""
        record = _unwrap(message)
        topics = record.get("topics") if isinstance(record, Mapping) else None
        label = self.decode_event_label(topics[0]) if topics else None
        if label is None:
            return record
        return self.decode_event(label, record)

    def _read_fields(self, schema: EventSchema, record: Mapping[str, Any]) -> dict[str, Any]:
        """ABI-decode each table input from its topic or data word, unformatted."""
        topics = [HexBytes(topic) for topic in record.get("topics") or []]
        data = HexBytes(record.get("data") or "0x")
        words = [data[i:i + WORD_SIZE_BYTES] for i in range(0, len(data), WORD_SIZE_BYTES)]

        indexed = iter(topics[1:])
        plain = iter(words)
        fields: dict[str, Any] = {}
        for field in schema.inputs:
            word = next(indexed if field.indexed else plain, None)
            if word is None or len(word) != WORD_SIZE_BYTES:
                source = "topic" if field.indexed else "data word"
                raise ValueError(f"missing {source} for {schema.label}.{field.name}")
            (fields[field.name],) = abi_decode([_ABI_TYPES[field.kind]], bytes(word))
        return fields

    def decode_block_header(self, message: Any, full: bool = False) -> Any:
        """
        Extract the block hash from a new-block message (hash or header).

        With full=True a header mapping yields a BlockHeader instead.
        Anything unrecognized is returned as-is.
        """
        header = _unwrap(message)
        if isinstance(header, (bytes, bytearray, str)):
            return _to_hex(header)
        if not isinstance(header, Mapping) or header.get("hash") is None:
            return header

        block_hash = _to_hex(header["hash"])
        if not full:
            return block_hash
        parent_hash = header.get("parentHash")
        return BlockHeader(
            number=_optional_int(header.get("number")),
            hash=block_hash,
            parent_hash=_to_hex(parent_hash) if parent_hash is not None else None,
            timestamp=_optional_int(header.get("timestamp")),
        )

    def decode_contracts_message(self, message: Any) -> Any:
        """Generic contract-log filter: no schema, just unwrap the singleton."""
        return _unwrap(message)

    def format_event_fields(self, label: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """
        Format raw event fields: ABI-decoded log words, or values already
        extracted elsewhere (e.g. from an RPC call result).

        Labels without a table entry get the common trade-field formatting.
        """
        schema = self._schemas.get(label)
        if schema is None:
            return format_common_fields(fields)
        formatted = dict(fields)
        for field in schema.inputs:
            if formatted.get(field.name) is not None:
                formatted[field.name] = format_field(field.kind, formatted[field.name])
        _apply_fill_context(label, formatted)
        return formatted


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return _to_int(value)
