"""
In-memory filter state for one listener session.

Maps each tracked label (`block`, `contracts`, one per event in the table)
to a FilterEntry holding the transport filter id and the poll heartbeat
task. Keys are fixed at construction; entries are only ever replaced or
reset, never removed.

Usage:
    registry = FilterRegistry(codec.labels())
    registry.set("withdraw", "0x1")
    registry.all_removed()  # False
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from app_logging.logger_manager import setup_module_logger
from shared.constants import RESERVED_LABELS
from shared.types import FilterEntry


class FilterRegistry:
    """Single source of truth for which filters are live."""

    def __init__(self, event_labels: Iterable[str] = ()) -> None:
        self._entries: dict[str, FilterEntry] = {label: FilterEntry() for label in RESERVED_LABELS}
        for label in event_labels:
            self._entries.setdefault(label, FilterEntry())
        self._logger = setup_module_logger(
            "filter_registry", "filter_registry.log", module_folder="Filter_Registry_Logs"
        )

    def labels(self) -> list[str]:
        return list(self._entries)

    def is_known(self, label: str) -> bool:
        return label in self._entries

    def get(self, label: str) -> FilterEntry:
        """Current entry, or a fresh inactive one (not stored) for an unknown label."""
        return self._entries.get(label, FilterEntry())

    def set(
        self,
        label: str,
        filter_id: str | None,
        heartbeat: asyncio.Task[None] | None = None,
    ) -> None:
        """Replace both fields of an entry together."""
        if label not in self._entries:
            raise KeyError(f"Unknown filter label: {label}")
        if filter_id is None and heartbeat is not None:
            raise ValueError(f"Heartbeat without a filter id for {label}")
        self._entries[label] = FilterEntry(filter_id=filter_id, heartbeat=heartbeat)
        self._logger.debug(
            "%s -> id=%s heartbeat=%s", label, filter_id, heartbeat is not None
        )

    def clear(self, label: str) -> None:
        """Reset an entry to the inactive state. Idempotent; unknown labels are ignored."""
        if label in self._entries and self._entries[label] != FilterEntry():
            self._entries[label] = FilterEntry()
            self._logger.debug("%s cleared", label)

    def all_removed(self) -> bool:
        return all(
            entry.filter_id is None and entry.heartbeat is None
            for entry in self._entries.values()
        )

    def active_labels(self) -> list[str]:
        return [label for label, entry in self._entries.items() if entry.is_active]

    def heartbeat_count(self) -> int:
        return sum(
            1
            for entry in self._entries.values()
            if entry.heartbeat is not None and not entry.heartbeat.done()
        )

    def snapshot(self) -> dict[str, FilterEntry]:
        return dict(self._entries)
