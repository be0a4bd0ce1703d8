"""
Listener lifecycle for block, contract and event filters.

Per label: inactive -> requesting -> active (polling or pushed) -> inactive.
Starts are idempotent, teardown always releases the heartbeat and the
transport-side id, and every start/stop path completes exactly once even
when the transport fails.

Usage:
    orchestrator = create_orchestrator(transport)
    await orchestrator.listen({"block": on_block, "withdraw": on_withdraw})
    ...
    await orchestrator.ignore(True)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

from web3 import Web3

from app_logging.logger_manager import setup_module_logger
from config.loader import get_config
from filters.codec import EventCodec
from filters.driver import SubscriptionDriver
from filters.registry import FilterRegistry
from shared.constants import (
    BLOCK_LABEL,
    CONTRACTS_FROM_BLOCK,
    CONTRACTS_LABEL,
    CONTRACTS_TO_BLOCK,
    EMPTY_FILTER_ID,
)
from shared.types import FILTER_NOT_CREATED, FilterEntry, RPCError, TransportMode

if TYPE_CHECKING:
    from filters.transport import FilterTransport

Handler = Callable[[Any], Any]


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an optional completion callback, awaiting it when it is async."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _is_error_response(response: Any) -> bool:
    return isinstance(response, Mapping) and "error" in response


class ListenerOrchestrator:
    """Public start/stop API over a FilterRegistry and SubscriptionDriver."""

    def __init__(
        self,
        transport: FilterTransport,
        registry: FilterRegistry,
        driver: SubscriptionDriver,
        codec: EventCodec,
        contracts: Mapping[str, str],
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._driver = driver
        self._codec = codec
        self._contracts: dict[str, str] = dict(contracts)

        # In-flight creation/teardown per label, shared by overlapping callers
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._teardowns: dict[str, asyncio.Future[bool]] = {}

        self._handlers: dict[str, Handler] = {}
        self._mode: TransportMode | None = None

        self._logger = setup_module_logger(
            "listener_orchestrator",
            "listener_orchestrator.log",
            module_folder="Listener_Orchestrator_Logs",
        )

    @property
    def registry(self) -> FilterRegistry:
        return self._registry

    @property
    def driver(self) -> SubscriptionDriver:
        return self._driver

    @property
    def codec(self) -> EventCodec:
        return self._codec

    @property
    def mode(self) -> TransportMode | None:
        return self._mode

    # ------------------------------------------------------------------
    # Filter setup primitives
    # ------------------------------------------------------------------

    async def setup_event_filter(self, contract: str, label: str) -> Any:
        """Ask the transport for a log filter on one contract + event topic."""
        schema = self._codec.get_schema(label)
        if schema is None or contract not in self._contracts:
            raise KeyError(f"No filter target for {label} on {contract}")
        return await self._transport.subscribe_logs(
            {"address": self._contracts[contract], "topics": [schema.topic]}
        )

    async def setup_contracts_filter(self) -> Any:
        """Ask the transport for a log filter over every known contract."""
        return await self._transport.subscribe_logs(
            {
                "address": list(self._contracts.values()),
                "fromBlock": CONTRACTS_FROM_BLOCK,
                "toBlock": CONTRACTS_TO_BLOCK,
            }
        )

    async def setup_block_filter(self) -> Any:
        return await self._transport.subscribe_new_blocks()

    # ------------------------------------------------------------------
    # Starting listeners
    # ------------------------------------------------------------------

    async def start_block_listener(self, on_created: Handler | None = None) -> str | RPCError:
        return await self._start(BLOCK_LABEL, self.setup_block_filter, on_created)

    async def start_contracts_listener(self, on_created: Handler | None = None) -> str | RPCError:
        return await self._start(CONTRACTS_LABEL, self.setup_contracts_filter, on_created)

    async def start_event_listener(
        self, label: str, on_created: Handler | None = None
    ) -> str | RPCError:
        """Start a filter for one event label. Returns the filter id or an RPCError."""
        schema = self._codec.get_schema(label)
        if schema is None or not self._registry.is_known(label):
            self._logger.warning("No event schema for %s, filter not created", label)
            await _notify(on_created, FILTER_NOT_CREATED)
            return FILTER_NOT_CREATED
        return await self._start(
            label, lambda: self.setup_event_filter(schema.contract, label), on_created
        )

    async def _start(
        self,
        label: str,
        create: Callable[[], Awaitable[Any]],
        on_created: Handler | None,
    ) -> str | RPCError:
        # An id that is being unsubscribed is never handed out again
        if label in self._teardowns:
            await asyncio.shield(self._teardowns[label])
        entry = self._registry.get(label)
        if entry.is_active:
            result: str | RPCError = entry.filter_id
        elif label in self._pending:
            result = await asyncio.shield(self._pending[label])
        else:
            request = asyncio.ensure_future(self._request_filter(label, create))
            self._pending[label] = request
            try:
                result = await asyncio.shield(request)
            finally:
                if self._pending.get(label) is request:
                    del self._pending[label]
        await _notify(on_created, result)
        return result

    async def _request_filter(
        self, label: str, create: Callable[[], Awaitable[Any]]
    ) -> str | RPCError:
        """Create one filter; never raises except on cancellation."""
        try:
            response = await create()
        except asyncio.CancelledError:
            self._registry.clear(label)
            raise
        except Exception as e:
            self._logger.error("Filter creation for %s failed: %s", label, e)
            self._registry.clear(label)
            return FILTER_NOT_CREATED

        if _is_error_response(response):
            self._logger.error("Filter creation for %s rejected: %s", label, response)
            self._registry.clear(label)
            return RPCError.from_response(response)

        if isinstance(response, (bytes, bytearray)):
            response = Web3.to_hex(bytes(response))
        if not response or response == EMPTY_FILTER_ID:
            self._logger.error("Filter creation for %s returned no id: %r", label, response)
            self._registry.clear(label)
            return FILTER_NOT_CREATED

        filter_id = str(response)
        self._registry.set(label, filter_id)
        self._logger.info("Filter created: %s -> %s", label, filter_id)
        return filter_id

    async def _start_listener(self, label: str) -> str | RPCError:
        if label == BLOCK_LABEL:
            return await self.start_block_listener()
        if label == CONTRACTS_LABEL:
            return await self.start_contracts_listener()
        return await self.start_event_listener(label)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def pacemaker(self, handlers: Mapping[str, Handler] | None) -> int:
        """
        Begin delivery for every label in `handlers` that has an active filter.

        Labels that are unknown or inactive are skipped. Returns the number of
        labels whose delivery was started.
        """
        if not handlers:
            return 0
        mode = self._mode or self._detect_mode()
        started = 0
        for label, handler in handlers.items():
            if not self._registry.is_known(label):
                self._logger.debug("pacemaker: skipping unknown label %s", label)
                continue
            if self._driver.start(label, handler, push=mode is TransportMode.PUSH):
                started += 1
        return started

    def _detect_mode(self) -> TransportMode:
        if self._transport.subscriptions_supported:
            return TransportMode.PUSH
        return TransportMode.POLL

    async def listen(
        self,
        handlers: Mapping[str, Handler] | None,
        on_ready: Callable[[dict[str, FilterEntry]], Any] | None = None,
    ) -> dict[str, FilterEntry]:
        """
        Rebuild and start every known label in `handlers`.

        Each label is cleared first (a previous session's id may be invalid
        at the node), then started, then handed to the pacemaker. Labels are
        processed concurrently; `on_ready` receives the registry snapshot
        once all of them have a result.
        """
        self._handlers = dict(handlers or {})
        self._mode = self._detect_mode()
        self._transport.set_reset_hook(self._on_connection_reset)

        labels = [label for label in self._handlers if self._registry.is_known(label)]
        skipped = [label for label in self._handlers if not self._registry.is_known(label)]
        if skipped:
            self._logger.warning("Ignoring unknown labels: %s", ", ".join(skipped))

        self._logger.info(
            "Listening (%s) for: %s", self._mode.value, ", ".join(labels) or "(none)"
        )
        await asyncio.gather(*(self._restart(label) for label in labels))

        snapshot = self._registry.snapshot()
        self._logger.info("Listen setup complete: active=%s", self._registry.active_labels())
        await _notify(on_ready, snapshot)
        return snapshot

    async def _restart(self, label: str) -> None:
        await self.clear_filter(label)
        result = await self._start_listener(label)
        if isinstance(result, RPCError):
            self._logger.warning("%s listener not started: %s", label, result.message)
            return
        self.pacemaker({label: self._handlers[label]})

    async def _on_connection_reset(self) -> None:
        self._logger.warning("Transport connection reset, rebuilding filters")
        await self.listen(self._handlers)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def clear_filter(
        self, label: str, on_cleared: Callable[[bool], Any] | None = None
    ) -> bool:
        """
        Stop delivery for `label`, unsubscribe its id, and reset its entry.

        An already-inactive label counts as cleared (True). False means the
        unsubscribe call failed; the entry is reset either way.
        """
        if self._registry.get(label).is_active or label in self._pending:
            result = await self._teardown(label)
        else:
            self._driver.stop(label)
            result = True
        await _notify(on_cleared, result)
        return result

    async def _teardown(
        self, label: str, custom: Callable[[str], Any] | None = None
    ) -> bool:
        if label in self._teardowns:
            return await asyncio.shield(self._teardowns[label])
        task = asyncio.ensure_future(self._release(label, custom))
        self._teardowns[label] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._teardowns.get(label) is task:
                del self._teardowns[label]

    async def _release(self, label: str, custom: Callable[[str], Any] | None) -> bool:
        # Let an in-flight creation land so its id is released too
        pending = self._pending.get(label)
        if pending is not None:
            await asyncio.shield(pending)

        filter_id = self._registry.get(label).filter_id
        self._driver.stop(label)
        try:
            if filter_id is None:
                return True
            if custom is not None:
                try:
                    await _notify(custom, filter_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.error("Custom teardown for %s failed: %s", label, e)
            try:
                response = await self._transport.unsubscribe(filter_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("Unsubscribe %s (%s) failed: %s", label, filter_id, e)
                return False
            if _is_error_response(response) or response is False:
                self._logger.warning("Unsubscribe %s (%s) returned %r", label, filter_id, response)
                return False
            self._logger.info("Filter removed: %s (%s)", label, filter_id)
            return True
        finally:
            self._registry.clear(label)

    async def ignore(
        self,
        uninstall: bool | Mapping[str, Callable[[str], Any]] = True,
        handlers: Mapping[str, Any] | Callable[[], Any] | None = None,
        on_complete: Callable[[], Any] | None = None,
    ) -> dict[str, bool]:
        """
        Bulk teardown.

        Targets the known labels of `handlers`, or every label when it is
        empty. Each target has its delivery stopped, its id unsubscribed
        (always, whatever `uninstall` says) and its entry reset. When
        `uninstall` is a mapping, its per-label callback runs with the id
        before the unsubscribe. A callable passed as `handlers` is taken as
        `on_complete`, which fires exactly once after every target is done.
        Returns label -> unsubscribe result.
        """
        if callable(handlers) and on_complete is None:
            on_complete, handlers = handlers, None
        custom: Mapping[str, Callable[[str], Any]] = (
            uninstall if isinstance(uninstall, Mapping) else {}
        )

        if handlers:
            labels = [label for label in handlers if self._registry.is_known(label)]
        else:
            labels = self._registry.labels()

        results = await asyncio.gather(
            *(self._teardown(label, custom.get(label)) for label in labels)
        )
        outcome = dict(zip(labels, results))

        for label in labels:
            self._handlers.pop(label, None)
        self._logger.info(
            "Ignored %d label(s); all filters removed: %s", len(labels), self.all_filters_removed()
        )
        await _notify(on_complete)
        return outcome

    def all_filters_removed(self) -> bool:
        return self._registry.all_removed()

    async def close(self) -> None:
        """Tear down every filter and detach from the transport's reset signal."""
        await self.ignore(True)
        self._transport.set_reset_hook(None)
        self._mode = None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_orchestrator(
    transport: FilterTransport,
    codec: EventCodec | None = None,
    pulse_seconds: float | None = None,
) -> ListenerOrchestrator:
    """Wire codec, registry and driver for one session from config."""
    if codec is None:
        codec = EventCodec.from_config()
    registry = FilterRegistry(codec.labels())
    driver = SubscriptionDriver(transport, registry, codec, pulse_seconds=pulse_seconds)
    contracts = get_config().get_contracts_config()
    return ListenerOrchestrator(transport, registry, driver, codec, contracts)
