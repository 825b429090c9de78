"""
keybridge serve command - Serve a Python namespace as the bridge peer.

Usage:
    keybridge serve background:api
    keybridge serve background:api --host 0.0.0.0 --port 8765
    keybridge serve background:api --config /etc/keybridge/bridge.yaml
"""

import logging

import click

from ..config import BridgeConfig, LOG_LEVELS
from ..loader import load_namespace
from ..peer import Peer
from ..server import create_app


@click.command()
@click.argument("target", required=True)
@click.option("--host", type=str, default=None, help="Bind host (default: 127.0.0.1)")
@click.option("--port", type=int, default=None, help="Bind port (default: 8765)")
@click.option("--config", type=click.Path(exists=True), help="Config file path")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None, help="Log level")
def serve_command(target, host, port, config, log_level):
    """Serve TARGET ('module' or 'module:attribute') as the bridge peer.

    Example:
        keybridge serve background:api --port 8765
    """
    try:
        cfg = BridgeConfig.load(config, host=host, port=port, log_level=log_level)
        namespace = load_namespace(target)
    except (ValueError, ImportError, AttributeError, OSError) as e:
        raise click.ClickException(str(e))

    logging.basicConfig(level=cfg.log_level.upper())

    peer = Peer(namespace, max_depth=cfg.max_describe_depth, callback_idle_timeout=cfg.callback_idle_timeout)
    app = create_app(peer)

    click.echo("Serving keybridge peer:")
    click.echo(f"  Target: {target}")
    click.echo(f"  Address: http://{cfg.host}:{cfg.port}")
    click.echo(f"  Exposed: {', '.join(d.name for d in peer.describe()) or '(nothing)'}")
    click.echo()

    import uvicorn
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=cfg.log_level)
