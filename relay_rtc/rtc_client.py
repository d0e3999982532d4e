"""Entry point for the relay-rtc client CLI."""

import asyncio
import logging
from typing import Dict, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from relay_rtc.client.capture import MediaPlayerCaptureProvider
from relay_rtc.client.client_class import RelayClient
from relay_rtc.exceptions import RelayRTCError

logging.basicConfig(level=logging.INFO)


async def run_client(
    client: RelayClient,
    target: Optional[str] = None,
    share: bool = False,
    record: Optional[str] = None,
):
    """Connect, optionally call ``target`` and share, and run until cancelled.

    Without a target the client waits for connection requests; with
    ``share`` set it starts sharing once one is accepted.
    """
    sink = MediaRecorder(record) if record else MediaBlackhole()
    sink_started = False

    @client.on("track")
    async def on_track(track):
        nonlocal sink_started
        logging.info(f"Receiving remote {track.kind} track")
        sink.addTrack(track)
        if not sink_started:
            sink_started = True
            await sink.start()

    @client.on("connection-request")
    async def on_connection_request(sender):
        if share and not client.is_sharing:
            try:
                await client.start_share()
            except RelayRTCError as e:
                logging.error(f"Could not start sharing with {sender}: {e}")

    @client.on("status")
    def on_status(status):
        logging.info(f"Connection status: {status}")

    @client.on("user-joined")
    def on_user_joined(user_id, user_type=None):
        logging.info(f"User joined: {user_id}")

    @client.on("user-left")
    def on_user_left(user_id):
        logging.info(f"User left: {user_id}")

    await client.start()
    logging.info(f"Your user id: {client.user_id}")
    try:
        if target:
            await client.connect(target)
            if share:
                await client.start_share()
        await asyncio.Future()  # Run forever
    finally:
        await client.close()
        if sink_started:
            await sink.stop()


def run_relay_client(
    user_id: Optional[str] = None,
    target: Optional[str] = None,
    server: Optional[str] = None,
    share: bool = False,
    source: Optional[str] = None,
    format: Optional[str] = None,
    options: Optional[Dict[str, str]] = None,
    record: Optional[str] = None,
):
    """Standalone function to run the client with CLI arguments.

    Args:
        user_id: Own user id; generated when omitted.
        target: User id to send a connection request to.
        server: Relay URL; defaults to the configured one.
        share: Share ``source`` with the peer.
        source: Capture device or media file passed to ``MediaPlayer``.
        format: FFmpeg input format of ``source`` (``x11grab``, ``avfoundation``...).
        options: FFmpeg input options.
        record: File to record the remote stream to.
    """
    capture_provider = None
    if source:
        capture_provider = MediaPlayerCaptureProvider(
            source, format=format, options=options
        )

    client = RelayClient(
        user_id=user_id, signaling_url=server, capture_provider=capture_provider
    )

    try:
        asyncio.run(run_client(client, target=target, share=share, record=record))
    except KeyboardInterrupt:
        logging.info("Client interrupted by user. Shutting down...")
    except RelayRTCError as e:
        logging.error(f"Client error: {e}")
        raise
