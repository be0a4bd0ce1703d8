"""
Shared pytest configuration and fixtures for the market filters tests.

Provides sample log records, a patched config loader, a mock transport and
ready-wired codec / registry / driver / orchestrator instances.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config.loader import ConfigLoader
from filters.codec import EventCodec, load_event_schemas

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

WITHDRAW_TOPIC = "0x44b6aeb7b38bb1ad04b4d0daf588cff086ff8829f0a34c30ddbb4d38695428de"
LOG_FILL_TX_TOPIC = "0x715b9a9cb6dfb4fa9cb1ebc2eba40d2a7bd66aa8cef75f87a77d1ff05d29a3b6"
LOG_ADD_TX_TOPIC = "0x331abc0b32c392f5cdc23a50af9497ab6b82f29ec2274cc33a409e7ab3aedc6c"
TRADING_FEE_UPDATED_TOPIC = "0xb8c735cc6495f8dac2581d532413dea78d7e03e0ff0880c32b4648c2145fba41"

SAMPLE_WITHDRAW_LOG = {
    "address": "0xa34c9f6fc047cea795f69b34a063d32e6cb6288c",
    "topics": [
        WITHDRAW_TOPIC,
        "0x000000000000000000000000189d2692d3050fe77543a099105af20d14ccc697",
    ],
    "data": "0x00000000000000000000000000000000000000000000000000000000585769b7",
    "blockNumber": "0x12c",
    "transactionIndex": "0x0",
    "transactionHash": "0xaacffeb38e31e4e8ff5c5da0a6bbf07c2e4c253cb84be14781d57a8aab763b31",
    "blockHash": "0xb897e8ec0d06fb504e9b7e5ab876ad59d725f63ed9c0271bd990c2e807371e58",
    "logIndex": "0x0",
    "removed": False,
}

SAMPLE_TRADING_FEE_LOG = {
    "address": "0x181ab5cfb79c3a4edd7b4556412b40453edeec32",
    "blockHash": "0x5f725f19f6e8d250ebaffdc3e9ce898dfd1c1aca2f33d760015148110df16e25",
    "blockNumber": "0x15074b",
    "data": (
        "0x000000000000000000000000000000000000000000000000009c51c4521e0000"
        "0000000000000000000000000000000000000000000000000000000058570e31"
    ),
    "logIndex": "0x0",
    "topics": [
        TRADING_FEE_UPDATED_TOPIC,
        "0x00000000000000000000000005ae1d0ca6206c6168b42efcd1fbe0ed144e821b",
        "0x00000000000000000000000000000000000000000000000000000000000f69b5",
        "0xe7d9beacb528f154ea5bbe325c2497cdb2a208f7fb8460bdf1dbc26e7190775b",
    ],
    "transactionHash": "0xdd394f14b92162c5b29011512513fff0188c5cff9b4d0d453b40175db6f9e868",
    "transactionIndex": "0x0",
}

SAMPLE_LOG_FILL_TX_LOG = {
    "address": "0x13cef2d86d4024f102e480627239359b5cb7bf52",
    "blockHash": "0x8171815b23ee1e0cf62e331f283c6d977689a93e3574b2ca35f75c19804914ef",
    "blockNumber": "0x11941e",
    "data": (
        "0x0000000000000000000000000000000000000000000000000000000000000001"
        "000000000000000000000000000000000000000000000000002386f26fc10000"
        "0000000000000000000000000000000000000000000000000de0b6b3a7640000"
        "640ce61af3b560a54f2f41dcba10ef6337df02e650c30f651789a090b02c312f"
        "0000000000000000000000000000000000000000000000000000000000000001"
    ),
    "logIndex": "0x0",
    "topics": [
        LOG_FILL_TX_TOPIC,
        "0xebb0d4c04bc87d3b401a5baad3b093a5e7cc3f4e996dc53e36db78c8b374cc9a",
        "0x0000000000000000000000007c0d52faab596c08f484e3478aebc6205f3f5d8c",
        "0x00000000000000000000000015f6400a88fb320822b689607d425272bea2175f",
    ],
    "transactionHash": "0xf9d3dd428f4d27c6ee14c6a08d877f777bc0365d29fad06ddc0f9dce11dbb9ce",
    "transactionIndex": "0x0",
}

SAMPLE_BLOCK_HASH = "0x96a9e1fd64969355521cbfd125569d6bb0088f36685200db58b77ca7a7fbebd6"

STANDARD_TIMING_CONFIG = {
    "filters": {"pulse_seconds": 0.5, "max_consecutive_poll_failures": 3},
    "reconnection": {
        "base_delay_seconds": 1,
        "max_delay_seconds": 60,
        "jitter_max_seconds": 1,
        "max_retries": 2,
    },
}

STANDARD_CONTRACTS = {
    "Cash": "0xa34c9f6fc047cea795f69b34a063d32e6cb6288c",
    "Trade": "0x13cef2d86d4024f102e480627239359b5cb7bf52",
    "UpdateTradingFee": "0x181ab5cfb79c3a4edd7b4556412b40453edeec32",
    "BuyAndSellShares": "0x8d28df956673fa4a8bc30cd0b3cb657445bc820e",
}


# ---------------------------------------------------------------------------
# Config loader fixture (patched singleton)
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_timing_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_timing_config.return_value = {
        key: dict(value) for key, value in STANDARD_TIMING_CONFIG.items()
    }
    loader.get_contracts_config.return_value = STANDARD_CONTRACTS.copy()
    loader.get_rpc_config.return_value = {"http_url": "http://127.0.0.1:8545", "ws_url": ""}
    loader.get_app_config.return_value = {"logging": {"log_dir": "logs"}}
    loader.get_event_abi.return_value = ConfigLoader().get_event_abi()
    return loader


# ---------------------------------------------------------------------------
# Filter session fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_transport():
    """Poll-mode transport double; flip subscriptions_supported for push tests."""
    transport = MagicMock()
    transport.subscriptions_supported = False
    transport.subscribe_logs = AsyncMock(return_value="0x1")
    transport.subscribe_new_blocks = AsyncMock(return_value="0xb1")
    transport.unsubscribe = AsyncMock(return_value=True)
    transport.get_filter_changes = AsyncMock(return_value=[])
    transport.register_subscription_callback = MagicMock()
    transport.unregister_subscription_callback = MagicMock()
    transport.set_reset_hook = MagicMock()
    return transport


@pytest.fixture
def codec():
    with patch("filters.codec.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        return EventCodec(load_event_schemas(ConfigLoader().get_event_abi()))


@pytest.fixture
def registry(codec):
    with patch("filters.registry.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from filters.registry import FilterRegistry

        return FilterRegistry(codec.labels())


@pytest.fixture
def driver(mock_transport, registry, codec, mock_config_loader):
    with patch("filters.driver.get_config", return_value=mock_config_loader), \
         patch("filters.driver.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from filters.driver import SubscriptionDriver

        return SubscriptionDriver(mock_transport, registry, codec)


@pytest.fixture
def orchestrator(mock_transport, registry, driver, codec):
    with patch("filters.orchestrator.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from filters.orchestrator import ListenerOrchestrator

        return ListenerOrchestrator(mock_transport, registry, driver, codec, STANDARD_CONTRACTS)
