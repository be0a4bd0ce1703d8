"""
Transport contract consumed by the filters package.

Anything that can create, poll and drop node-side filters fits; the
concrete web3.py implementation lives in rpc/web3_transport.py and tests use
AsyncMock stand-ins.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

SubscriptionCallback = Callable[[Any], Any]
ResetHook = Callable[[], Awaitable[Any]]


class FilterTransport(Protocol):
    @property
    def subscriptions_supported(self) -> bool:
        """True when a persistent push channel (WebSocket/IPC) is configured."""
        ...

    async def subscribe_logs(self, params: dict[str, Any]) -> Any: ...

    async def subscribe_new_blocks(self) -> Any: ...

    async def unsubscribe(self, filter_id: str) -> Any: ...

    async def get_filter_changes(self, filter_id: str) -> Any: ...

    def register_subscription_callback(self, filter_id: str, callback: SubscriptionCallback) -> None: ...

    def unregister_subscription_callback(self, filter_id: str) -> None: ...

    def set_reset_hook(self, hook: ResetHook | None) -> None: ...
