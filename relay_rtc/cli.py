"""Unified CLI for relay-rtc using Click."""

import sys

import click
from loguru import logger

from relay_rtc.config import get_config
from relay_rtc.rtc_client import run_relay_client
from relay_rtc.rtc_server import run_relay_server


def parse_options(values):
    """Parse repeated ``key=value`` options into a dict.

    Raises:
        click.BadParameter: A value has no ``=``.
    """
    options = {}
    for value in values:
        key, sep, option = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got '{value}'")
        options[key] = option
    return options


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--host",
    type=str,
    required=False,
    help="Interface to bind. Overrides RELAY_RTC_HOST and the config file.",
)
@click.option(
    "--port",
    "-p",
    type=click.IntRange(1, 65535),
    required=False,
    help="Port to listen on (default: 3000). Overrides PORT and the config file.",
)
def server(host, port):
    """Start the signaling relay.

    Serves the raw socket at /ws?userId=... and Socket.IO at /socket.io/.

    Examples:

        relay-rtc server

        relay-rtc server --host 127.0.0.1 --port 8080
    """
    config = get_config()
    logger.info(
        f"Starting relay on {host or config.host}:{port or config.port} "
        f"({config.environment})"
    )
    run_relay_server(host=host, port=port)


@cli.command()
@click.option(
    "--user-id",
    "-u",
    type=str,
    required=False,
    help="Your user id. Generated when omitted.",
)
@click.option(
    "--target",
    "-t",
    type=str,
    required=False,
    help="User id to connect to. Without it the client waits for requests.",
)
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Relay URL, e.g. ws://localhost:3000. Overrides RELAY_RTC_SIGNALING_WS.",
)
@click.option(
    "--share/--no-share",
    default=False,
    help="Share the capture source with the peer.",
)
@click.option(
    "--source",
    type=str,
    required=False,
    help="Capture device or media file, e.g. ':0.0' with --format x11grab.",
)
@click.option(
    "--format",
    "-f",
    "input_format",
    type=str,
    required=False,
    help="FFmpeg input format of --source (x11grab, gdigrab, avfoundation).",
)
@click.option(
    "--option",
    "-o",
    "input_options",
    multiple=True,
    help="FFmpeg input option as key=value, e.g. -o video_size=1280x720. Repeatable.",
)
@click.option(
    "--record",
    "-r",
    type=click.Path(dir_okay=False, writable=True),
    required=False,
    help="Record the remote stream to this file.",
)
def client(user_id, target, server, share, source, input_format, input_options, record):
    """Start a screen sharing client.

    Examples:

        # Wait for a viewer and share the X11 display once it connects
        relay-rtc client -u alice --share --source :0.0 -f x11grab

        # Connect to alice and record what she shares
        relay-rtc client -u bob -t alice --record alice.mp4
    """
    if share and not source:
        logger.error("--share requires --source")
        sys.exit(1)

    try:
        options = parse_options(input_options)
    except click.BadParameter as e:
        logger.error(str(e))
        sys.exit(1)

    run_relay_client(
        user_id=user_id,
        target=target,
        server=server,
        share=share,
        source=source,
        format=input_format,
        options=options,
        record=record,
    )


@cli.command(name="show-config")
def show_config():
    """Print the effective configuration."""
    config = get_config()
    click.echo(f"Environment:         {config.environment}")
    click.echo(f"Host:                {config.host}")
    click.echo(f"Port:                {config.port}")
    click.echo(f"Signaling WebSocket: {config.signaling_websocket}")
    click.echo(f"Max retries:         {config.transport.max_retries}")
    click.echo(f"Retry delay:         {config.transport.retry_delay}s")
    for server in config.ice_servers:
        click.echo(f"ICE server:          {server['urls']}")


if __name__ == "__main__":
    cli()
