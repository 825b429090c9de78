"""
keybridge run/describe commands - Talk to a running peer.

Usage:
    keybridge run script.py --peer-url http://127.0.0.1:8765
    keybridge run script.py --sync --hide-host-identifiers
    keybridge describe --peer-url http://127.0.0.1:8765
"""

import asyncio
import logging
from typing import List

import click

from ..bridge import Bridge
from ..channel import HttpChannel
from ..config import BridgeConfig, LOG_LEVELS
from ..dispatcher import OperationDispatcher
from ..errors import KeyBridgeError
from ..mirror import fetch_descriptors
from ..protocol import PeerPropertyDescriptor, PropertyKind


@click.command()
@click.argument("script", type=click.File("r"))
@click.option("--peer-url", default=None, help="Peer server URL (default: http://127.0.0.1:8765)")
@click.option("--sync", "is_sync", is_flag=True, help="Run the script as a plain function (no await)")
@click.option("--hide-host-identifiers", is_flag=True, help="Shadow the host globals inside the script")
@click.option("--no-callback-args", is_flag=True, help="Send callable arguments as plain values")
@click.option("--config", type=click.Path(exists=True), help="Config file path")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None, help="Log level")
def run_command(script, peer_url, is_sync, hide_host_identifiers, no_callback_args, config, log_level):
    """Run SCRIPT against a keybridge peer.

    Script errors are logged locally and on the peer; the command itself
    always completes.
    """
    try:
        cfg = BridgeConfig.load(config, peer_url=peer_url, log_level=log_level)
    except (ValueError, OSError) as e:
        raise click.ClickException(str(e))
    if is_sync:
        cfg.is_async = False
    if hide_host_identifiers:
        cfg.hide_host_identifiers = True
    if no_callback_args:
        cfg.allow_callback_arguments = False

    logging.basicConfig(level=cfg.log_level.upper())
    asyncio.run(_run_script(script.read(), cfg))


async def _run_script(code: str, cfg: BridgeConfig) -> None:
    bridge = Bridge(HttpChannel(cfg.peer_url), config=cfg)
    try:
        await bridge.execute(code)
    finally:
        await bridge.close()


@click.command()
@click.option("--peer-url", default=None, help="Peer server URL (default: http://127.0.0.1:8765)")
@click.option("--config", type=click.Path(exists=True), help="Config file path")
def describe_command(peer_url, config):
    """Print the objects a peer exposes."""
    try:
        cfg = BridgeConfig.load(config, peer_url=peer_url)
    except (ValueError, OSError) as e:
        raise click.ClickException(str(e))

    try:
        descriptors = asyncio.run(_fetch(cfg.peer_url))
    except KeyBridgeError as e:
        raise click.ClickException(f"Failed to describe peer: {e}")

    for line in format_descriptors(descriptors):
        click.echo(line)


async def _fetch(peer_url: str) -> List[PeerPropertyDescriptor]:
    channel = HttpChannel(peer_url)
    try:
        return await fetch_descriptors(OperationDispatcher(channel))
    finally:
        await channel.aclose()


def format_descriptors(descriptors: List[PeerPropertyDescriptor], indent: int = 0) -> List[str]:
    lines = []
    for descriptor in descriptors:
        pad = "  " * indent
        if descriptor.kind is PropertyKind.OBJECT:
            lines.append(f"{pad}{descriptor.name}/")
            lines.extend(format_descriptors(descriptor.children, indent + 1))
        elif descriptor.kind is PropertyKind.FUNCTION:
            lines.append(f"{pad}{descriptor.name}()")
        else:
            lines.append(f"{pad}{descriptor.name}")
    return lines
