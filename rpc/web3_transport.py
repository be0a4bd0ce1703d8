"""
web3.py filter transport.

Implements the filters package's transport contract on an AsyncWeb3
instance: eth_newFilter / eth_getFilterChanges / eth_uninstallFilter over
HTTP, eth_subscribe / eth_unsubscribe over a persistent (WebSocket/IPC)
provider. In push mode a reader task drains `w3.socket.process_subscriptions()`
and routes each payload to the callback registered for its subscription id;
when the socket drops it reconnects with exponential backoff and asks the
orchestrator to rebuild its filters.

Usage:
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    transport = Web3FilterTransport(w3)
    orchestrator = create_orchestrator(transport)
"""

from __future__ import annotations

import asyncio
import inspect
import random
from typing import Any, cast

from eth_typing import HexStr
from web3 import AsyncWeb3, Web3
from web3.exceptions import ProviderConnectionError
from web3.providers.persistent import PersistentConnectionProvider
from websockets.exceptions import ConnectionClosed

from app_logging.logger_manager import setup_module_logger
from config.loader import get_config
from filters.transport import ResetHook, SubscriptionCallback

_CONNECTION_ERRORS = (ConnectionClosed, ProviderConnectionError, ConnectionError, OSError)


class Web3TransportError(Exception):
    """Raised when a filter or subscription call to the node fails."""


class Web3FilterTransport:
    """
    Filter/subscription calls over AsyncWeb3.

    The delivery mode follows the provider: persistent providers push,
    everything else is polled.
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3
        self._callbacks: dict[str, SubscriptionCallback] = {}
        self._reset_hook: ResetHook | None = None
        self._reader: asyncio.Task[None] | None = None

        timing_cfg = get_config().get_timing_config().get("reconnection", {})
        self._base_delay: float = float(timing_cfg.get("base_delay_seconds", 1))
        self._max_delay: float = float(timing_cfg.get("max_delay_seconds", 60))
        self._jitter_max: float = float(timing_cfg.get("jitter_max_seconds", 1))
        self._max_retries: int = int(timing_cfg.get("max_retries", 10))

        self._logger = setup_module_logger(
            "web3_transport", "web3_transport.log", module_folder="Web3_Transport_Logs"
        )

    @property
    def subscriptions_supported(self) -> bool:
        return isinstance(self._w3.provider, PersistentConnectionProvider)

    # ------------------------------------------------------------------
    # Filter creation
    # ------------------------------------------------------------------

    async def subscribe_logs(self, params: dict[str, Any]) -> str:
        """Create a log filter (poll) or logs subscription (push). Returns its id."""
        filter_params = dict(params)
        address = filter_params.get("address")
        if isinstance(address, (list, tuple)):
            filter_params["address"] = [Web3.to_checksum_address(a) for a in address]
        elif address:
            filter_params["address"] = Web3.to_checksum_address(address)

        try:
            if self.subscriptions_supported:
                # Subscriptions only deliver new logs; block bounds are not accepted
                filter_params.pop("fromBlock", None)
                filter_params.pop("toBlock", None)
                subscription_id = await self._w3.eth.subscribe("logs", filter_params)
                self._ensure_reader()
                return str(subscription_id)
            log_filter = await self._w3.eth.filter(filter_params)
            return str(log_filter.filter_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error("Log filter creation failed for %s: %s", filter_params, e)
            raise Web3TransportError(f"Log filter creation failed: {e}") from e

    async def subscribe_new_blocks(self) -> str:
        try:
            if self.subscriptions_supported:
                subscription_id = await self._w3.eth.subscribe("newHeads")
                self._ensure_reader()
                return str(subscription_id)
            block_filter = await self._w3.eth.filter("latest")
            return str(block_filter.filter_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error("Block filter creation failed: %s", e)
            raise Web3TransportError(f"Block filter creation failed: {e}") from e

    # ------------------------------------------------------------------
    # Filter use / removal
    # ------------------------------------------------------------------

    async def unsubscribe(self, filter_id: str) -> bool:
        try:
            if self.subscriptions_supported:
                return await self._w3.eth.unsubscribe(cast(HexStr, filter_id))
            return await self._w3.eth.uninstall_filter(cast(HexStr, filter_id))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise Web3TransportError(f"Unsubscribe {filter_id} failed: {e}") from e

    async def get_filter_changes(self, filter_id: str) -> list[Any]:
        try:
            return list(await self._w3.eth.get_filter_changes(cast(HexStr, filter_id)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise Web3TransportError(f"get_filter_changes {filter_id} failed: {e}") from e

    # ------------------------------------------------------------------
    # Push delivery
    # ------------------------------------------------------------------

    def register_subscription_callback(self, filter_id: str, callback: SubscriptionCallback) -> None:
        self._callbacks[filter_id] = callback

    def unregister_subscription_callback(self, filter_id: str) -> None:
        self._callbacks.pop(filter_id, None)

    def set_reset_hook(self, hook: ResetHook | None) -> None:
        self._reset_hook = hook

    def _ensure_reader(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(
                self._read_subscriptions(), name="web3_subscription_reader"
            )

    async def _deliver(self, payload: Any) -> None:
        subscription_id = payload.get("subscription")
        callback = self._callbacks.get(str(subscription_id))
        if callback is None:
            self._logger.debug("No callback for subscription %s", subscription_id)
            return
        try:
            result = callback(payload.get("result"))
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error("Subscription callback for %s failed: %s", subscription_id, e)

    async def _read_subscriptions(self) -> None:
        """Drain subscription messages; reconnect and trigger the reset hook on socket loss."""
        retry_count = 0
        while True:
            try:
                async for payload in self._w3.socket.process_subscriptions():
                    retry_count = 0
                    await self._deliver(payload)
                self._logger.info("Subscription stream ended")
                return
            except asyncio.CancelledError:
                raise
            except _CONNECTION_ERRORS as e:
                if retry_count >= self._max_retries:
                    self._logger.error(
                        "Giving up on subscription stream after %d reconnects: %s",
                        retry_count,
                        e,
                    )
                    return
                delay = min(
                    self._base_delay * (2 ** retry_count) + random.uniform(0, self._jitter_max),
                    self._max_delay,
                )
                retry_count += 1
                self._logger.warning(
                    "Subscription stream lost (%s), reconnecting in %.1fs (attempt %d/%d)",
                    e,
                    delay,
                    retry_count,
                    self._max_retries,
                )
                await asyncio.sleep(delay)
                if not await self._reconnect():
                    continue

                # Old subscription ids died with the socket
                self._callbacks.clear()
                if self._reset_hook is not None:
                    await self._reset_hook()

    async def _reconnect(self) -> bool:
        provider = self._w3.provider
        try:
            await provider.disconnect()
            await provider.connect()
        except asyncio.CancelledError:
            raise
        except _CONNECTION_ERRORS as e:
            self._logger.warning("Reconnect failed: %s", e)
            return False
        self._logger.info("Reconnected to node")
        return True

    async def close(self) -> None:
        """Stop the subscription reader and drop all callbacks."""
        self._callbacks.clear()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._reader = None
