#!/usr/bin/env python3
"""
Stream Bridge CLI

Command-line interface for relay nodes and file transfer peers.

Usage:
    streambridge start -sp 4001                     # Relay node
    streambridge start --mode join -d MULTIADDR     # Join a relay node
    streambridge start --mode transfer -sp 4002     # Receive files
    streambridge start -d MULTIADDR                 # Send (and receive) files
    streambridge send -d MULTIADDR FILE...          # Send files and exit
    streambridge id --key-file node.key             # Show a peer id
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler

from .config import EXAMPLE_CONFIG, MODES, load_config
from .exceptions import StreamBridgeError
from .host import Host, PeerAddress, make_identity
from .node import StreamNode, read_line_in_thread
from .transfer import FileSender, TransferResult

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    if verbose:
        level = 'DEBUG'
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


async def console_prompt() -> Optional[str]:
    """Ask the operator for the next file path."""
    return await read_line_in_thread(
        lambda: console.input("[bold]Enter file path >[/bold] ")
    )


def fail(message: str):
    """Report a fatal setup error and exit unsuccessfully."""
    logger.error(message)
    console.print(f"[red]✗ {message}[/red]")
    sys.exit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """Stream Bridge - two-party stream relay and framed file transfer."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('-sp', '--source-port', type=int, default=None,
              help='Source port number (0 = any available)')
@click.option('-d', '--dest', default=None, help='Destination multiaddr string')
@click.option('--mode', type=click.Choice(MODES), default=None,
              help='auto: relay without -d, transfer with -d')
@click.option('--debug', is_flag=True,
              help='Generate the same peer id on every run (derived from the port; unsafe)')
@click.option('--host', 'listen_host', default=None, help='Listen address')
@click.option('--key-file', type=click.Path(dir_okay=False), default=None,
              help='Persist the peer identity in this file')
@click.option('--output-dir', type=click.Path(file_okay=False), default=None,
              help='Where received files are written')
@click.option('--raw-output', type=click.Path(dir_okay=False), default=None,
              help='Accept whole-stream transfers into this file')
@click.option('--idle-timeout', type=float, default=None,
              help='Disconnect relay directions idle for this many seconds')
@click.pass_context
def start(ctx, source_port, dest, mode, debug, listen_host, key_file,
          output_dir, raw_output, idle_timeout):
    """Start a node and block until interrupted."""
    config = ctx.obj['config']

    # Flags override file and environment
    if source_port is not None:
        config.listen_port = source_port
    if dest is not None:
        config.destination = dest
    if mode is not None:
        config.mode = mode
    if debug:
        config.deterministic_identity = True
    if listen_host is not None:
        config.listen_host = listen_host
    if key_file is not None:
        config.key_file = Path(key_file)
    if output_dir is not None:
        config.output_dir = Path(output_dir)
    if raw_output is not None:
        config.raw_output = Path(raw_output)
    if idle_timeout is not None:
        config.relay_idle_timeout = idle_timeout

    try:
        node = StreamNode(config, prompt=console_prompt)
    except (ValueError, OSError) as e:
        fail(f"Setup failed: {e}")

    node.receiver.on_received(
        lambda r: console.print(f"\n[green]✓ File received: {r.filename} → {r.path}[/green]")
    )

    async def run():
        try:
            await node.start()
        except (StreamBridgeError, ValueError, OSError) as e:
            await node.stop()
            fail(f"Setup failed: {e}")

        addresses = "\n".join(f"  [cyan]{a}[/cyan]" for a in node.listen_addresses())
        console.print(Panel.fit(
            f"[bold green]Stream Node Started[/bold green]\n\n"
            f"Peer ID: [cyan]{node.peer_id[:32]}...[/cyan]\n"
            f"Mode: [yellow]{node.mode}[/yellow]\n"
            f"Port: [yellow]{node.host.port}[/yellow]\n"
            f"Output Dir: [blue]{node.output_dir}[/blue]\n\n"
            f"[bold]Addresses:[/bold]\n{addresses}",
            title="Node Info"
        ))
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

        try:
            await node.run()
        except (StreamBridgeError, OSError, asyncio.TimeoutError) as e:
            fail(f"Could not reach destination: {e}")
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    console.print("[green]Node stopped[/green]")


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('-d', '--dest', required=True, help='Destination multiaddr string')
@click.option('--raw', is_flag=True, help='Send without a header (whole-stream transfer)')
@click.pass_context
def send(ctx, files, dest, raw):
    """Send files to a peer, one stream per file, then exit."""
    config = ctx.obj['config']

    try:
        address = PeerAddress.parse(dest)
    except StreamBridgeError as e:
        fail(str(e))

    async def run() -> int:
        identity = make_identity(key_path=config.key_file)
        host = Host(identity, host=config.listen_host, port=0)
        sender = FileSender(host, config.chunk_size, config.dial_timeout)
        results = []
        failures = 0

        for file_path in files:
            try:
                if raw:
                    result = await sender.send_raw(address, Path(file_path))
                else:
                    result = await sender.send_file(address, Path(file_path))
                results.append(result)
            except (StreamBridgeError, OSError, asyncio.TimeoutError) as e:
                failures += 1
                console.print(f"[red]✗ {Path(file_path).name}: {e}[/red]")

        await host.stop()
        if results:
            console.print(results_table(results))
        return failures

    failures = asyncio.run(run())
    if failures:
        sys.exit(1)


@cli.command('id')
@click.option('--key-file', type=click.Path(dir_okay=False), default=None,
              help='Key file (created if missing)')
@click.option('--debug-port', type=int, default=None,
              help='Show the deterministic peer id for this port')
def show_id(key_file, debug_port):
    """Show (or create) a peer identity."""
    if debug_port is not None:
        identity = make_identity(deterministic=True, seed=debug_port)
    elif key_file:
        identity = make_identity(key_path=Path(key_file))
    else:
        identity = make_identity()
    console.print(identity.peer_id)


@cli.command('example-config')
def example_config():
    """Print an example config file."""
    console.print("Example configuration file (config.json):")
    console.print(EXAMPLE_CONFIG, markup=False)


def results_table(results: List[TransferResult]) -> Table:
    table = Table(title="Transfers")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Peer", style="green")
    table.add_column("Time", justify="right")

    for r in results:
        table.add_row(
            r.filename,
            format_size(r.byte_length),
            r.peer[:16] + "...",
            f"{r.elapsed:.2f}s"
        )
    return table


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli()


if __name__ == '__main__':
    main()
