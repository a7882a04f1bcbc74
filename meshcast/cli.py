"""Unified CLI for meshcast using Click."""

import json
import sys
import uuid

import click
from loguru import logger

from meshcast.session import run_session


@click.group()
def cli():
    pass


# =============================================================================
# Session Commands
# =============================================================================


@cli.command()
@click.option(
    "--url",
    "-u",
    type=str,
    required=False,
    help="Signaling relay WebSocket URL. Overrides config file and MESHCAST_SIGNALING_WS.",
)
@click.option(
    "--no-camera",
    is_flag=True,
    default=False,
    help="Join without acquiring camera and microphone.",
)
@click.option(
    "--share-screen",
    is_flag=True,
    default=False,
    help="Share the screen as outgoing video on start.",
)
@click.option(
    "--participant-id",
    "-p",
    type=str,
    required=False,
    help="Fixed participant id (a random UUID by default).",
)
def join(url, no_camera, share_screen, participant_id):
    """Join a session and stream until interrupted.

    Connects to the signaling relay, uplinks local media to the server and
    exchanges media directly with the other participant.

    Example:
        meshcast join --url ws://localhost:8080/ws/stream
    """
    if url and not url.startswith(("ws://", "wss://")):
        logger.error(f"Signaling URL must start with ws:// or wss://: {url}")
        sys.exit(1)

    try:
        run_session(
            url=url,
            camera=not no_camera,
            share_screen=share_screen,
            participant_id=participant_id,
        )
    except Exception as e:
        logger.error(f"Session failed: {e}")
        sys.exit(1)


@cli.command(name="id")
def new_id():
    """Print a fresh participant id."""
    click.echo(str(uuid.uuid4()))


# =============================================================================
# Config Commands (subgroup)
# =============================================================================


@cli.group()
def config():
    """Inspect meshcast configuration.

    Configuration is read from ./meshcast.toml or ~/.meshcast/config.toml,
    with MESHCAST_* environment variables taking precedence.
    """
    pass


@config.command(name="show")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON.")
def config_show(as_json):
    """Print the resolved configuration."""
    from meshcast.config import get_config

    resolved = get_config().as_dict()
    if as_json:
        click.echo(json.dumps(resolved, indent=2))
        return

    click.echo(f"Environment:   {resolved['environment']}")
    click.echo(f"Config file:   {resolved['config_file'] or '(none)'}")
    click.echo(f"Signaling:     {resolved['signaling_websocket']}")
    click.echo(f"ICE servers:   {', '.join(resolved['ice_servers']) or '(none)'}")
    media = resolved["media"]
    click.echo(f"Camera:        {media['camera']}")
    click.echo(f"Microphone:    {media['microphone'] or '(disabled)'}")
    click.echo(f"Screen:        {media['screen']}")
    click.echo(f"Video:         {media['video_size']} @ {media['framerate']} fps")


if __name__ == "__main__":
    cli()
