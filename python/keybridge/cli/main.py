"""
keybridge CLI - Command line interface for keybridge.

Usage:
    keybridge serve background:api --port 8765     # Serve a peer namespace
    keybridge run script.py --peer-url URL         # Run a user script
    keybridge describe --peer-url URL              # Show the peer's objects
"""

import click
from .run import run_command, describe_command
from .serve import serve_command


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """keybridge - call a privileged peer from isolated scripts."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Add subcommands
cli.add_command(serve_command, name="serve")
cli.add_command(run_command, name="run")
cli.add_command(describe_command, name="describe")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
