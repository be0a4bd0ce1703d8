"""
Message delivery for active filters.

Routes transport messages through the label's decoder to the consumer
handler, either by polling `get_filter_changes` on a per-label heartbeat
task (HTTP) or by registering a push callback with the transport
(WebSocket/IPC).

Usage:
    driver = SubscriptionDriver(transport, registry, codec)
    driver.start("withdraw", on_withdraw, push=transport.subscriptions_supported)
    ...
    driver.stop("withdraw")
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from app_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import (
    BLOCK_LABEL,
    CONTRACTS_LABEL,
    DEFAULT_MAX_POLL_FAILURES,
    DEFAULT_PULSE_SECONDS,
)

if TYPE_CHECKING:
    from filters.codec import EventCodec
    from filters.registry import FilterRegistry
    from filters.transport import FilterTransport

Handler = Callable[[Any], Any]


class SubscriptionDriver:
    """
    Push/pull delivery over one registry.

    At most one heartbeat task and one push registration exist per label;
    starting an already-delivering label is a no-op.
    """

    def __init__(
        self,
        transport: FilterTransport,
        registry: FilterRegistry,
        codec: EventCodec,
        pulse_seconds: float | None = None,
    ) -> None:
        self._transport = transport
        self._registry = registry

        timing_cfg = get_config().get_timing_config().get("filters", {})
        if pulse_seconds is None:
            pulse_seconds = float(timing_cfg.get("pulse_seconds", DEFAULT_PULSE_SECONDS))
        self._pulse_seconds: float = pulse_seconds
        self._max_poll_failures: int = int(
            timing_cfg.get("max_consecutive_poll_failures", DEFAULT_MAX_POLL_FAILURES)
        )

        # Resolved once: label -> decoder
        self._decoders: dict[str, Callable[[Any], Any]] = {
            BLOCK_LABEL: codec.decode_block_header,
            CONTRACTS_LABEL: codec.decode_contracts_message,
        }
        for label in registry.labels():
            if label not in self._decoders and codec.get_schema(label) is not None:
                self._decoders[label] = functools.partial(codec.decode_event, label)

        # label -> filter id registered for push delivery
        self._push_registrations: dict[str, str] = {}
        self.last_scheduled: str | None = None

        self._logger = setup_module_logger(
            "subscription_driver", "subscription_driver.log", module_folder="Subscription_Driver_Logs"
        )

    @property
    def pulse_seconds(self) -> float:
        return self._pulse_seconds

    @property
    def active_heartbeats(self) -> int:
        """Number of live poll heartbeats across all labels."""
        return self._registry.heartbeat_count()

    @property
    def push_registrations(self) -> dict[str, str]:
        return dict(self._push_registrations)

    def has_decoder(self, label: str) -> bool:
        return label in self._decoders

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def dispatch(self, label: str, message: Any, handler: Handler) -> int:
        """
        Decode `message` for `label` and hand each record to `handler`.

        Poll results arrive as batches and are split into single records.
        Handler errors are logged per record. Returns the number delivered.
        """
        decoder = self._decoders.get(label)
        if decoder is None or message is None:
            return 0

        records = message if isinstance(message, (list, tuple)) else [message]
        delivered = 0
        for record in records:
            decoded = decoder(record)
            try:
                result = handler(decoded)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("Handler for %s failed: %s", label, e, exc_info=True)
                continue
            delivered += 1

        if delivered:
            self._logger.debug("Delivered %d message(s) for %s", delivered, label)
        return delivered

    async def poll_filter(self, label: str, handler: Handler) -> int:
        """
        Run one get_filter_changes round for `label`.

        No-op for labels without a decoder or without an active filter.
        A response for a filter id that was cleared or replaced while the
        request was in flight is dropped.
        """
        entry = self._registry.get(label)
        if label not in self._decoders or not entry.is_active:
            return 0

        filter_id = entry.filter_id
        changes = await self._transport.get_filter_changes(filter_id)
        if self._registry.get(label).filter_id != filter_id:
            self._logger.debug("Dropping stale poll result for %s (%s)", label, filter_id)
            return 0
        return await self.dispatch(label, changes, handler)

    async def _heartbeat(self, label: str, filter_id: str, handler: Handler) -> None:
        """Poll loop for one filter; exits once the registry no longer holds `filter_id`."""
        consecutive_failures = 0
        while True:
            await asyncio.sleep(self._pulse_seconds)
            if self._registry.get(label).filter_id != filter_id:
                return
            try:
                await self.poll_filter(label, handler)
                consecutive_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                consecutive_failures += 1
                if consecutive_failures == self._max_poll_failures:
                    self._logger.error(
                        "Poll for %s failing repeatedly (%d in a row): %s",
                        label,
                        consecutive_failures,
                        e,
                    )
                else:
                    self._logger.warning(
                        "Poll for %s failed (%d/%d): %s",
                        label,
                        consecutive_failures,
                        self._max_poll_failures,
                        e,
                    )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, label: str, handler: Handler, push: bool) -> bool:
        """
        Begin delivery for an active label. Returns True if something was started.
        """
        entry = self._registry.get(label)
        if label not in self._decoders or not entry.is_active:
            return False
        filter_id = entry.filter_id

        if push:
            if self._push_registrations.get(label) == filter_id:
                return False

            async def _on_message(message: Any) -> None:
                await self.dispatch(label, message, handler)

            self._transport.register_subscription_callback(filter_id, _on_message)
            self._push_registrations[label] = filter_id
            self._logger.info("Push delivery registered for %s (%s)", label, filter_id)
            return True

        if entry.heartbeat is not None and not entry.heartbeat.done():
            return False
        heartbeat = asyncio.create_task(
            self._heartbeat(label, filter_id, handler), name=f"heartbeat:{label}"
        )
        self._registry.set(label, filter_id, heartbeat)
        self.last_scheduled = label
        self._logger.info(
            "Polling %s (%s) every %.2fs", label, filter_id, self._pulse_seconds
        )
        return True

    def stop(self, label: str) -> bool:
        """
        Stop delivery for `label`: cancel its heartbeat and drop its push
        registration. The filter id itself stays in the registry.
        """
        stopped = False
        entry = self._registry.get(label)
        if entry.heartbeat is not None:
            # A handler tearing down its own label must not cancel itself mid-teardown;
            # the loop exits on its next pulse once the id is cleared.
            if entry.heartbeat is not asyncio.current_task():
                entry.heartbeat.cancel()
            if self._registry.is_known(label):
                self._registry.set(label, entry.filter_id, None)
            stopped = True

        filter_id = self._push_registrations.pop(label, None)
        if filter_id is not None:
            self._transport.unregister_subscription_callback(filter_id)
            stopped = True

        if stopped:
            self._logger.info("Delivery stopped for %s", label)
        return stopped
