"""
Market filters client: main entrypoint.

Connects to the node, starts the configured listeners, and logs every
decoded message until SIGINT/SIGTERM, then tears all filters down.

A WebSocket URL (MARKET_RPC_URL_WS or rpc.json "ws_url") selects push
subscriptions; otherwise the HTTP endpoint is polled.

Usage:
    FILTER_LABELS=block,withdraw,log_fill_tx python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

import aiohttp
from dotenv import load_dotenv
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from app_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs
from filters.codec import EventCodec
from filters.orchestrator import ListenerOrchestrator, create_orchestrator
from rpc.web3_transport import Web3FilterTransport
from shared.constants import CONTRACTS_LABEL
from shared.serialization_utils import to_json

# ---------------------------------------------------------------------------
# Module logger (logged to logs/Main_Logs)
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(rpc_url: str, push: bool, labels: list[str], pulse_seconds: float) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Market filters client starting")
    _logger.info("=" * 60)
    _logger.info(
        "  rpc             : %s...%s", rpc_url[:25], rpc_url[-6:] if len(rpc_url) > 31 else ""
    )
    _logger.info("  delivery        : %s", "push" if push else "poll")
    if not push:
        _logger.info("  pulse           : %.2fs", pulse_seconds)
    _logger.info("  labels          : %s", ", ".join(labels))
    _logger.info("=" * 60)


def _make_handler(label: str, codec: EventCodec):
    """Consumer handler that logs each decoded message as JSON."""

    def _handle(message: Any) -> None:
        # The contracts filter delivers raw logs from every tabled event
        if label == CONTRACTS_LABEL:
            message = codec.decode_log(message)
        _logger.info("[%s] %s", label, to_json(message))

    return _handle


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _connect() -> tuple[AsyncWeb3, str]:
    rpc_cfg = get_config().get_rpc_config()
    ws_url: str = rpc_cfg.get("ws_url", "")
    http_url: str = rpc_cfg.get("http_url", "")
    timeout = float(rpc_cfg.get("request_timeout_seconds", 30))

    if ws_url:
        w3 = await AsyncWeb3(WebSocketProvider(ws_url, request_timeout=timeout))
        return w3, ws_url
    provider = AsyncHTTPProvider(
        http_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)}
    )
    return AsyncWeb3(provider), http_url


async def _run() -> None:
    """Wire transport and orchestrator, listen until a shutdown signal."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    create_module_log_directories()

    # ------------------------------------------------------------------
    # 2. Connect and build the listener session
    # ------------------------------------------------------------------
    w3, rpc_url = await _connect()
    if not await w3.is_connected():
        _logger.critical("Cannot connect to node at %s", rpc_url)
        sys.exit(1)

    transport = Web3FilterTransport(w3)
    orchestrator: ListenerOrchestrator = create_orchestrator(transport)
    labels = get_config().get_filter_labels()
    _log_banner(
        rpc_url, transport.subscriptions_supported, labels, orchestrator.driver.pulse_seconds
    )

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Listen until shutdown, then remove every filter
    # ------------------------------------------------------------------
    try:
        handlers = {label: _make_handler(label, orchestrator.codec) for label in labels}
        snapshot = await orchestrator.listen(handlers)
        _logger.info("Filters: %s", to_json(snapshot))
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, removing filters")
        await orchestrator.close()
        await transport.close()
        if transport.subscriptions_supported:
            await w3.provider.disconnect()
        _logger.info("Shutdown complete (all filters removed: %s)", orchestrator.all_filters_removed())


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
