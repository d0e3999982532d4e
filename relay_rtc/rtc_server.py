"""Entry point for the relay-rtc server CLI."""

import asyncio
import logging

from relay_rtc.config import get_config
from relay_rtc.server.relay_server import RelayServer

logging.basicConfig(level=logging.INFO)


async def serve(host: str, port: int):
    """Run the relay until cancelled."""
    server = RelayServer()
    await server.start(host, port)
    try:
        await asyncio.Future()  # Run forever
    finally:
        await server.stop()


def run_relay_server(host: str = None, port: int = None):
    """Start the relay server.

    Args:
        host: Interface to bind. CLI option overrides config.
        port: Port to listen on. CLI option overrides config.
    """
    config = get_config()
    host = host or config.host
    port = port or config.port

    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logging.info("Relay server interrupted by user. Shutting down...")
