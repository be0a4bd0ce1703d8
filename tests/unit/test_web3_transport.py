"""
Unit tests for rpc/web3_transport.py.

Tests cover:
- Delivery mode detection from the provider type
- Poll-mode filter calls (eth_newFilter / getFilterChanges / uninstallFilter)
- Push-mode subscriptions and per-subscription callback routing
- Reconnection with backoff and the reset hook
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from web3 import Web3
from web3.providers.persistent import PersistentConnectionProvider

from rpc.web3_transport import Web3FilterTransport, Web3TransportError
from tests.conftest import SAMPLE_WITHDRAW_LOG, STANDARD_CONTRACTS, WITHDRAW_TOPIC

CASH = STANDARD_CONTRACTS["Cash"]
TRADE = STANDARD_CONTRACTS["Trade"]


def _make_w3(push: bool = False) -> MagicMock:
    w3 = MagicMock()
    w3.provider = MagicMock(spec=PersistentConnectionProvider) if push else MagicMock()
    w3.provider.connect = AsyncMock()
    w3.provider.disconnect = AsyncMock()
    w3.eth.filter = AsyncMock(return_value=MagicMock(filter_id="0xf1"))
    w3.eth.subscribe = AsyncMock(return_value="0xs1")
    w3.eth.unsubscribe = AsyncMock(return_value=True)
    w3.eth.uninstall_filter = AsyncMock(return_value=True)
    w3.eth.get_filter_changes = AsyncMock(return_value=[])
    return w3


def _make_transport(w3, mock_config_loader) -> Web3FilterTransport:
    with patch("rpc.web3_transport.get_config", return_value=mock_config_loader), \
         patch("rpc.web3_transport.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        return Web3FilterTransport(w3)


async def _broken_stream():
    raise ConnectionError("socket closed")
    yield  # pragma: no cover


async def _one_message_stream():
    yield {"subscription": "0xs1", "result": SAMPLE_WITHDRAW_LOG}


@pytest.fixture
def poll_w3():
    return _make_w3(push=False)


@pytest.fixture
def push_w3():
    return _make_w3(push=True)


@pytest.fixture
def poll_transport(poll_w3, mock_config_loader):
    return _make_transport(poll_w3, mock_config_loader)


@pytest.fixture
def push_transport(push_w3, mock_config_loader):
    transport = _make_transport(push_w3, mock_config_loader)
    transport._ensure_reader = MagicMock()
    return transport


# ---------------------------------------------------------------------------
# Mode detection
# ---------------------------------------------------------------------------


class TestMode:

    def test_http_provider_polls(self, poll_transport):
        assert poll_transport.subscriptions_supported is False

    def test_persistent_provider_pushes(self, push_transport):
        assert push_transport.subscriptions_supported is True


# ---------------------------------------------------------------------------
# Poll mode
# ---------------------------------------------------------------------------


class TestPollFilters:

    @pytest.mark.asyncio
    async def test_log_filter_checksums_address(self, poll_transport, poll_w3):
        filter_id = await poll_transport.subscribe_logs({"address": CASH, "topics": [WITHDRAW_TOPIC]})

        assert filter_id == "0xf1"
        poll_w3.eth.filter.assert_awaited_once_with(
            {"address": Web3.to_checksum_address(CASH), "topics": [WITHDRAW_TOPIC]}
        )

    @pytest.mark.asyncio
    async def test_log_filter_address_list(self, poll_transport, poll_w3):
        params = {"address": [CASH, TRADE], "fromBlock": "0x01", "toBlock": "latest"}

        await poll_transport.subscribe_logs(params)

        sent = poll_w3.eth.filter.call_args.args[0]
        assert sent["address"] == [Web3.to_checksum_address(CASH), Web3.to_checksum_address(TRADE)]
        assert sent["fromBlock"] == "0x01"
        # caller's dict is not mutated
        assert params["address"] == [CASH, TRADE]

    @pytest.mark.asyncio
    async def test_block_filter(self, poll_transport, poll_w3):
        assert await poll_transport.subscribe_new_blocks() == "0xf1"
        poll_w3.eth.filter.assert_awaited_once_with("latest")

    @pytest.mark.asyncio
    async def test_creation_error_is_wrapped(self, poll_transport, poll_w3):
        poll_w3.eth.filter.side_effect = ValueError("bad params")
        with pytest.raises(Web3TransportError):
            await poll_transport.subscribe_logs({"address": CASH})

    @pytest.mark.asyncio
    async def test_get_filter_changes(self, poll_transport, poll_w3):
        poll_w3.eth.get_filter_changes.return_value = (SAMPLE_WITHDRAW_LOG,)

        assert await poll_transport.get_filter_changes("0xf1") == [SAMPLE_WITHDRAW_LOG]
        poll_w3.eth.get_filter_changes.assert_awaited_once_with("0xf1")

    @pytest.mark.asyncio
    async def test_get_filter_changes_error_is_wrapped(self, poll_transport, poll_w3):
        poll_w3.eth.get_filter_changes.side_effect = ValueError("filter not found")
        with pytest.raises(Web3TransportError):
            await poll_transport.get_filter_changes("0xf1")

    @pytest.mark.asyncio
    async def test_unsubscribe_uninstalls_filter(self, poll_transport, poll_w3):
        assert await poll_transport.unsubscribe("0xf1") is True
        poll_w3.eth.uninstall_filter.assert_awaited_once_with("0xf1")
        poll_w3.eth.unsubscribe.assert_not_awaited()


# ---------------------------------------------------------------------------
# Push mode
# ---------------------------------------------------------------------------


class TestPushSubscriptions:

    @pytest.mark.asyncio
    async def test_logs_subscription_drops_block_range(self, push_transport, push_w3):
        subscription_id = await push_transport.subscribe_logs(
            {"address": [CASH], "fromBlock": "0x01", "toBlock": "latest"}
        )

        assert subscription_id == "0xs1"
        push_w3.eth.subscribe.assert_awaited_once_with(
            "logs", {"address": [Web3.to_checksum_address(CASH)]}
        )
        push_transport._ensure_reader.assert_called_once()

    @pytest.mark.asyncio
    async def test_new_heads_subscription(self, push_transport, push_w3):
        assert await push_transport.subscribe_new_blocks() == "0xs1"
        push_w3.eth.subscribe.assert_awaited_once_with("newHeads")

    @pytest.mark.asyncio
    async def test_unsubscribe(self, push_transport, push_w3):
        await push_transport.unsubscribe("0xs1")
        push_w3.eth.unsubscribe.assert_awaited_once_with("0xs1")
        push_w3.eth.uninstall_filter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deliver_routes_by_subscription_id(self, push_transport):
        callback = AsyncMock()
        push_transport.register_subscription_callback("0xs1", callback)

        await push_transport._deliver({"subscription": "0xs1", "result": SAMPLE_WITHDRAW_LOG})
        await push_transport._deliver({"subscription": "0xother", "result": "0xaa"})

        callback.assert_awaited_once_with(SAMPLE_WITHDRAW_LOG)

    @pytest.mark.asyncio
    async def test_unregistered_callback_no_longer_called(self, push_transport):
        callback = MagicMock()
        push_transport.register_subscription_callback("0xs1", callback)
        push_transport.unregister_subscription_callback("0xs1")
        push_transport.unregister_subscription_callback("0xs1")

        await push_transport._deliver({"subscription": "0xs1", "result": "0xaa"})

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_callback_error_is_logged(self, push_transport):
        push_transport.register_subscription_callback("0xs1", MagicMock(side_effect=RuntimeError("x")))

        await push_transport._deliver({"subscription": "0xs1", "result": "0xaa"})

        push_transport._logger.error.assert_called_once()


# ---------------------------------------------------------------------------
# Reader / reconnection
# ---------------------------------------------------------------------------


class TestReconnect:

    @pytest.mark.asyncio
    async def test_reconnects_and_fires_reset_hook(self, push_transport, push_w3):
        callback = AsyncMock()
        push_transport.register_subscription_callback("0xold", MagicMock())

        async def _resubscribe():
            push_transport.register_subscription_callback("0xs1", callback)

        reset_hook = AsyncMock(side_effect=_resubscribe)
        push_transport.set_reset_hook(reset_hook)
        push_w3.socket.process_subscriptions = MagicMock(
            side_effect=[_broken_stream(), _one_message_stream()]
        )

        with patch("rpc.web3_transport.asyncio.sleep", AsyncMock()) as sleep:
            await push_transport._read_subscriptions()

        sleep.assert_awaited_once()
        push_w3.provider.disconnect.assert_awaited_once()
        push_w3.provider.connect.assert_awaited_once()
        reset_hook.assert_awaited_once()
        callback.assert_awaited_once_with(SAMPLE_WITHDRAW_LOG)
        assert "0xold" not in push_transport._callbacks

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, push_transport, push_w3):
        reset_hook = AsyncMock()
        push_transport.set_reset_hook(reset_hook)
        push_w3.socket.process_subscriptions = MagicMock(side_effect=lambda: _broken_stream())

        with patch("rpc.web3_transport.asyncio.sleep", AsyncMock()) as sleep:
            await push_transport._read_subscriptions()

        # max_retries is 2 in the test timing config
        assert sleep.await_count == 2
        assert reset_hook.await_count == 2
        push_transport._logger.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_reconnect_retries_without_reset(self, push_transport, push_w3):
        reset_hook = AsyncMock()
        push_transport.set_reset_hook(reset_hook)
        push_w3.provider.connect.side_effect = [ConnectionError("refused"), None]
        push_w3.socket.process_subscriptions = MagicMock(
            side_effect=[_broken_stream(), _broken_stream(), _one_message_stream()]
        )

        with patch("rpc.web3_transport.asyncio.sleep", AsyncMock()):
            await push_transport._read_subscriptions()

        assert push_w3.provider.connect.await_count == 2
        reset_hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_cancels_reader(self, push_transport):
        reader = asyncio.create_task(asyncio.sleep(10))
        push_transport._reader = reader
        push_transport.register_subscription_callback("0xs1", MagicMock())

        await push_transport.close()

        assert reader.cancelled()
        assert push_transport._reader is None
        assert push_transport._callbacks == {}
